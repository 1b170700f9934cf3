"""Command line interface.

Provides the `serve`, `cert` and `status` commands.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from spahost.config import CertMode, ConfigError, load_config
from spahost.httpd import StartupError, install_signal_handlers, start_server
from spahost.readiness import default_health_url, probe_health
from spahost.tls import CertificateStore, TLSError, load_material

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _add_config_args(parser: argparse.ArgumentParser):
    """Arguments that feed into ServerConfig."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="YAML config file (default: $SPAHOST_CONFIG)",
    )
    parser.add_argument(
        "--cert",
        type=Path,
        help="Path to TLS certificate",
    )
    parser.add_argument(
        "--key",
        type=Path,
        help="Path to TLS private key",
    )
    parser.add_argument(
        "--cert-mode",
        choices=[m.value for m in CertMode],
        help="self-signed: generate when missing; external: must already exist",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )


def _load(args, **overrides):
    return load_config(
        config_file=args.config,
        cert_path=args.cert,
        key_path=args.key,
        cert_mode=CertMode.parse(args.cert_mode) if args.cert_mode else None,
        **overrides,
    )


def _handle_serve(argv):
    """Handle 'serve': run the server in the foreground."""
    parser = argparse.ArgumentParser(
        prog="spahost serve",
        description="Serve the SPA build over HTTP or HTTPS",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_config_args(parser)
    parser.add_argument(
        "--https",
        action="store_const",
        const=True,
        dest="use_https",
        help="Serve over HTTPS",
    )
    parser.add_argument("--port", "-p", type=int, help="HTTP port")
    parser.add_argument("--https-port", type=int, help="HTTPS port")
    parser.add_argument("--bind", "-b", help="Address to bind to")
    parser.add_argument("--build", type=Path, help="Directory holding the SPA build")
    parser.add_argument("--env", help="Environment label (e.g. development, production)")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output startup info as JSON",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load(
            args,
            use_https=args.use_https,
            http_port=args.port,
            https_port=args.https_port,
            bind=args.bind,
            build_path=args.build,
            environment=args.env,
        )
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e.message)
        return 1

    try:
        handle = start_server(config)
    except StartupError:
        return 1

    if args.json:
        info = {
            "url": handle.url,
            "port": handle.port,
            "scheme": handle.scheme,
            "build_path": str(config.build_path),
            "environment": config.environment,
        }
        if handle.material:
            info["fingerprint"] = handle.material.fingerprint
            info["certificate_source"] = handle.material.source.value
        print(json.dumps(info, indent=2))
    else:
        print(f"\nServer running at {handle.url}")
        if handle.material:
            print(f"Certificate fingerprint: {handle.material.fingerprint}")
        print("\nPress Ctrl+C to stop...")

    install_signal_handlers(handle)
    return handle.run()


def _handle_cert(argv):
    """Handle 'cert generate|show'."""
    parser = argparse.ArgumentParser(
        prog="spahost cert",
        description="Manage the server certificate",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("action", choices=["generate", "show"])
    _add_config_args(parser)
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing certificate (generate)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON (show)",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load(args)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e.message)
        return 1

    if args.action == "generate":
        return _generate_cert(config, args.force)
    return _show_cert(config, args.json)


def _generate_cert(config, force: bool) -> int:
    if config.cert_mode is CertMode.EXTERNAL:
        print("Error: certificates are externally managed (cert_mode=external)", file=sys.stderr)
        return 1

    store = CertificateStore(config)
    if config.cert_path.exists() and not force:
        print(f"Certificate already exists: {config.cert_path} (use --force to replace)")
        return 0

    try:
        material = store.generate()
    except TLSError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print(f"Certificate: {material.cert_path}")
    print(f"Key: {material.key_path}")
    print(f"Fingerprint (SHA256): {material.fingerprint}")
    print(f"Valid until: {material.not_after.isoformat()}")
    return 0


def _show_cert(config, as_json: bool) -> int:
    try:
        material = load_material(config.cert_path, config.key_path)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    valid = material.is_valid()
    info = {
        "cert_path": str(material.cert_path),
        "key_path": str(material.key_path),
        "fingerprint": material.fingerprint,
        "not_before": material.not_before.isoformat(),
        "not_after": material.not_after.isoformat(),
        "subject_names": sorted(material.subject_names),
        "valid": valid,
    }
    if as_json:
        print(json.dumps(info, indent=2))
    else:
        print(f"Certificate: {info['cert_path']}")
        print(f"Fingerprint (SHA256): {info['fingerprint']}")
        print(f"Valid: {info['not_before']} to {info['not_after']}{'' if valid else ' (EXPIRED)'}")
        print(f"Subject names: {', '.join(info['subject_names'])}")

    return 0 if valid else 2


def _handle_status(argv):
    """Handle 'status': probe a running server's health endpoint."""
    parser = argparse.ArgumentParser(
        prog="spahost status",
        description="Check whether the server is up",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--url", help="Health URL (default: derived from config)")
    parser.add_argument("--config", "-c", type=Path, help="YAML config file")
    parser.add_argument("--timeout", type=float, default=2.0, help="Request timeout")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    args = parser.parse_args(argv)

    url = args.url
    if url is None:
        try:
            url = default_health_url(load_config(config_file=args.config))
        except ConfigError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1

    status = probe_health(url, timeout=args.timeout)

    if args.json:
        print(json.dumps(status, indent=2))
    else:
        if status["healthy"]:
            uptime = (status["body"] or {}).get("uptime")
            print(f"Server: healthy ({url}, uptime {uptime}s)")
        else:
            print(f"Server: {status['message']}")

    # Exit codes: 0 = healthy, 1 = unreachable, 2 = reachable+unhealthy
    if not status["reachable"]:
        return 1
    if not status["healthy"]:
        return 2
    return 0


def main(argv=None):
    """CLI entry point.

    Dispatches to serve/cert/status subcommands.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    subcommands = {
        "serve": _handle_serve,
        "cert": _handle_cert,
        "status": _handle_status,
    }

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: spahost <command> [options]")
        print()
        print("Commands:")
        print("  serve    Serve the SPA build (HTTP or HTTPS)")
        print("  cert     Generate or inspect the TLS certificate")
        print("  status   Check a running server's health")
        print()
        print("Run 'spahost <command> --help' for command-specific options.")
        return 0

    subcmd = argv[0]
    if subcmd not in subcommands:
        print(f"Error: Unknown command '{subcmd}'")
        print(f"Available commands: {', '.join(subcommands)}")
        return 1

    return subcommands[subcmd](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
