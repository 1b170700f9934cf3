"""Main HTTP/HTTPS server.

Serves the SPA build output, the health and version endpoints, and owns
the listener lifecycle: choosing HTTP or HTTPS at startup, reloading the
certificate when it changes on disk, and draining connections on shutdown.
"""

import gzip
import json
import logging
import signal
import ssl
import threading
import time
from email.utils import formatdate
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlsplit

from spahost.assets import AssetPolicy, EntryDocumentUnavailable
from spahost.config import ServerConfig
from spahost.tls import (
    CertificateMaterial,
    CertificateSource,
    CertificateStore,
    TLSError,
    create_ssl_context,
)
from spahost.version import (
    VersionKind,
    VersionReader,
    handle_version_request,
    utc_timestamp,
)
from spahost.watcher import CertificateWatcher, start_watching

logger = logging.getLogger(__name__)

COMPRESSION_THRESHOLD = 1024
COMPRESSIBLE_TYPES = (
    "text/",
    "application/json",
    "application/javascript",
    "application/manifest+json",
    "application/xml",
    "image/svg+xml",
)

SECURITY_HEADERS = (
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "SAMEORIGIN"),
    ("Referrer-Policy", "no-referrer"),
    ("X-DNS-Prefetch-Control", "off"),
    ("Cross-Origin-Opener-Policy", "same-origin"),
)
HSTS_HEADER = ("Strict-Transport-Security", "max-age=15552000; includeSubDomains")

NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

CORS_ALLOWED_METHODS = "GET,HEAD,PUT,PATCH,POST,DELETE"


class ServerState(Enum):
    STARTING = "starting"
    LISTENING_HTTP = "listening-http"
    LISTENING_HTTPS = "listening-https"
    FAILED_TO_START = "failed-to-start"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


class StartupError(Exception):
    """Server could not reach a listening state."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ConnectionTracker:
    """Counts open connections and lets shutdown wait for them to drain."""

    def __init__(self):
        self._cond = threading.Condition()
        self._active = 0

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def acquire(self):
        with self._cond:
            self._active += 1

    def release(self):
        with self._cond:
            if self._active > 0:
                self._active -= 1
            if self._active == 0:
                self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no connections remain. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._active == 0, timeout)


class Application:
    """Request-independent state shared by all handlers (read-only)."""

    def __init__(
        self,
        config: ServerConfig,
        policy: Optional[AssetPolicy] = None,
        versions: Optional[VersionReader] = None,
    ):
        self.config = config
        self.policy = policy or AssetPolicy.from_config(config)
        self.versions = versions or VersionReader.from_config(config)
        self.started = time.monotonic()

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started


def _is_compressible(content_type: str) -> bool:
    return content_type.startswith(COMPRESSIBLE_TYPES)


def _etag(stat) -> str:
    return f'W/"{stat.st_size:x}-{stat.st_mtime_ns:x}"'


def _etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """Weak comparison of an If-None-Match list against etag."""
    if not if_none_match:
        return False
    opaque = etag[2:] if etag.startswith("W/") else etag
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == opaque:
            return True
    return False


class SPARequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the SPA server."""

    protocol_version = "HTTP/1.1"
    server_version = "spahost"

    @property
    def app(self) -> Application:
        return self.server.app

    def setup(self):
        # Idle keep-alive connections time out so shutdown can drain
        self.timeout = self.app.config.keep_alive_timeout
        super().setup()

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def end_headers(self):
        if self.server.draining.is_set():
            self.send_header("Connection", "close")
            self.close_connection = True
        super().end_headers()

    # -- response helpers -------------------------------------------------

    def _common_headers(self, vary: list) -> list:
        headers = list(SECURITY_HEADERS)
        if self.server.ssl_context is not None:
            headers.append(HSTS_HEADER)

        origin = self.headers.get("Origin")
        if origin and origin in self.app.config.allowed_origins:
            headers.append(("Access-Control-Allow-Origin", origin))
            headers.append(("Access-Control-Allow-Credentials", "true"))
        if self.app.config.allowed_origins:
            vary.append("Origin")
        return headers

    def _accepts_gzip(self) -> bool:
        accept = self.headers.get("Accept-Encoding", "")
        return any(part.split(";")[0].strip() == "gzip" for part in accept.split(","))

    def send_body(self, status: int, body: bytes, headers: dict):
        """Send a complete response with middleware headers applied."""
        headers = dict(headers)
        vary = []
        content_type = headers.get("Content-Type", "")

        if status == 304:
            # Same Vary as the full response, no entity headers
            headers.pop("Content-Type", None)
            if _is_compressible(content_type):
                vary.append("Accept-Encoding")
            body = b""
        elif body and _is_compressible(content_type):
            vary.append("Accept-Encoding")
            if len(body) >= COMPRESSION_THRESHOLD and self._accepts_gzip():
                body = gzip.compress(body)
                headers["Content-Encoding"] = "gzip"

        common = self._common_headers(vary)
        self.send_response(status)
        for name, value in common:
            self.send_header(name, value)
        if vary:
            self.send_header("Vary", ", ".join(vary))
        for name, value in headers.items():
            self.send_header(name, value)
        if status != 304:
            self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def send_json(self, data: dict, status: int = 200, no_store: bool = False):
        """Send JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if no_store:
            headers.update(NO_STORE_HEADERS)
        self.send_body(status, body, headers)

    def send_error_json(self, exc: Exception):
        """Generic error handler: JSON body, details only in development."""
        logger.error("Server error: %s", exc, exc_info=exc)
        message = str(exc) if self.app.config.is_development else "Something went wrong"
        self.send_json({"error": "Internal Server Error", "message": message}, 500)

    # -- methods ----------------------------------------------------------

    def do_GET(self):
        """Handle GET requests."""
        try:
            self._route()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Client disconnected: %s", self.path)
            self.close_connection = True
        except Exception as e:
            self.send_error_json(e)

    def do_HEAD(self):
        """Handle HEAD requests (same as GET without a body)."""
        self.do_GET()

    def do_OPTIONS(self):
        """Answer CORS preflight requests."""
        headers = {"Access-Control-Allow-Methods": CORS_ALLOWED_METHODS}
        requested = self.headers.get("Access-Control-Request-Headers")
        if requested:
            headers["Access-Control-Allow-Headers"] = requested
        self.send_body(204, b"", headers)

    def _not_found(self):
        path = urlsplit(self.path).path
        self.send_json(
            {"error": "Not Found", "message": f"Cannot {self.command} {path}"}, 404
        )

    do_POST = do_PUT = do_PATCH = do_DELETE = _not_found

    # -- routes -----------------------------------------------------------

    def _route(self):
        path = urlsplit(self.path).path
        endpoint = path.rstrip("/")

        # Health check endpoint
        if endpoint == "/health":
            self._handle_health()
            return

        if endpoint == "/api/version":
            self._handle_version(VersionKind.DECLARED)
            return

        if endpoint == "/api/current-version":
            self._handle_version(VersionKind.CURRENT_BUILD)
            return

        self._handle_static()

    def _handle_health(self):
        config = self.app.config
        self.send_json(
            {
                "status": "OK",
                "timestamp": utc_timestamp(),
                "uptime": round(self.app.uptime, 3),
                "environment": config.environment,
            },
            no_store=True,
        )

    def _handle_version(self, kind: VersionKind):
        response, status = handle_version_request(
            self.app.versions, kind, self.app.config.is_development
        )
        self.send_json(response, status, no_store=True)

    def _handle_static(self):
        """Serve a build file, or the entry document for unmatched routes."""
        policy = self.app.policy
        target = policy.resolve(self.path)

        if target == policy.entry_path:
            try:
                body = policy.read_entry_document()
                stat = target.stat()
            except (EntryDocumentUnavailable, OSError) as e:
                logger.error("Error serving %s: %s", policy.entry_document, e)
                self.send_body(
                    500, b"Internal Server Error", {"Content-Type": "text/plain; charset=utf-8"}
                )
                return
        else:
            stat = target.stat()
            body = target.read_bytes()

        headers = policy.headers_for(target)
        headers["ETag"] = _etag(stat)
        headers["Last-Modified"] = formatdate(stat.st_mtime, usegmt=True)

        if _etag_matches(self.headers.get("If-None-Match"), headers["ETag"]):
            self.send_body(304, b"", headers)
            return

        self.send_body(200, body, headers)


class SPAHTTPServer(ThreadingHTTPServer):
    """Threading server with per-connection TLS and connection tracking."""

    daemon_threads = True
    block_on_close = False

    def __init__(
        self,
        server_address,
        handler_class,
        app: Application,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.app = app
        self.ssl_context = ssl_context
        self.tracker = ConnectionTracker()
        self.draining = threading.Event()
        super().__init__(server_address, handler_class)

    def get_request(self):
        sock, addr = super().get_request()
        # Read once: a reload may swap the context for later connections
        context = self.ssl_context
        if context is not None:
            sock = context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False)
        return sock, addr

    def finish_request(self, request, client_address):
        if isinstance(request, ssl.SSLSocket):
            request.settimeout(self.app.config.keep_alive_timeout)
            try:
                request.do_handshake()
            except (ssl.SSLError, OSError) as e:
                logger.debug("TLS handshake with %s failed: %s", client_address[0], e)
                return
        super().finish_request(request, client_address)

    def process_request(self, request, client_address):
        self.tracker.acquire()
        try:
            super().process_request(request, client_address)
        except Exception:
            self.tracker.release()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self.tracker.release()

    def handle_error(self, request, client_address):
        logger.debug("Connection error from %s", client_address[0], exc_info=True)


class ServerHandle:
    """A bound listener plus everything needed to stop it."""

    def __init__(
        self,
        httpd: SPAHTTPServer,
        config: ServerConfig,
        material: Optional[CertificateMaterial] = None,
        store: Optional[CertificateStore] = None,
    ):
        self.httpd = httpd
        self.config = config
        self.material = material
        self.store = store
        self.watcher: Optional[CertificateWatcher] = None
        self.state = ServerState.LISTENING_HTTPS if material else ServerState.LISTENING_HTTP
        self.exit_code: Optional[int] = None

        # Reentrant: a second signal may arrive while shutdown() holds it
        self._lock = threading.RLock()
        self._shutdown_requested = threading.Event()
        self._shutdown_started = False
        self._serving = False
        self._serve_thread: Optional[threading.Thread] = None

    @property
    def scheme(self) -> str:
        return "https" if self.material else "http"

    @property
    def port(self) -> int:
        return self.httpd.server_address[1]

    @property
    def url(self) -> str:
        return f"{self.scheme}://localhost:{self.port}"

    @property
    def tracker(self) -> ConnectionTracker:
        return self.httpd.tracker

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested.is_set()

    def serve_forever(self):
        """Serve requests in the calling thread until shutdown."""
        self._serving = True
        self.httpd.serve_forever()

    def start_background(self) -> threading.Thread:
        """Serve requests in a background thread."""
        if self._serve_thread is None:
            self._serving = True
            self._serve_thread = threading.Thread(
                target=self.httpd.serve_forever, name="spahost-accept", daemon=True
            )
            self._serve_thread.start()
        return self._serve_thread

    def reload_certificate(self, changed=None) -> bool:
        """Swap in the certificate currently on disk.

        Connections already accepted keep their TLS session; only new
        connections see the new certificate. Invalid files leave the
        current certificate in place.
        """
        if self.store is None or self.material is None:
            logger.info("Certificate change ignored (server is not using HTTPS)")
            return False
        try:
            material = self.store.load()
            context = create_ssl_context(material)
        except TLSError as e:
            logger.warning("Keeping current certificate: %s", e.message)
            return False
        except (ssl.SSLError, OSError) as e:
            logger.warning("Keeping current certificate: %s", e)
            return False

        self.httpd.ssl_context = context
        self.material = material
        logger.info(
            "Certificate reloaded (fingerprint %s, expires %s)",
            material.fingerprint,
            material.not_after.isoformat(),
        )
        return True

    def request_shutdown(self, reason: str = "shutdown") -> bool:
        """Ask the server to shut down. Safe to call from signal handlers.

        Returns:
            True for the first request, False if shutdown was already requested
        """
        with self._lock:
            if self._shutdown_requested.is_set():
                logger.info("%s received while already shutting down, ignoring", reason)
                return False
            self._shutdown_requested.set()
        logger.info("%s received, shutting down gracefully", reason)
        return True

    def shutdown(self, timeout: Optional[float] = None) -> Optional[int]:
        """Stop accepting, drain connections, and report the exit code.

        Args:
            timeout: Drain timeout in seconds (default: config.shutdown_timeout)

        Returns:
            0 if all connections drained, 1 if the timeout elapsed. A repeated
            call returns the first call's result (None while still draining).
        """
        with self._lock:
            if self._shutdown_started:
                logger.debug("Shutdown already in progress")
                return self.exit_code
            self._shutdown_started = True
            self._shutdown_requested.set()
            self.state = ServerState.SHUTTING_DOWN

        if timeout is None:
            timeout = self.config.shutdown_timeout

        if self.watcher is not None:
            self.watcher.stop()

        # Stop accepting before waiting on in-flight connections
        self.httpd.draining.set()
        if self._serving:
            self.httpd.shutdown()
        self.httpd.server_close()

        if self.tracker.wait_idle(timeout):
            logger.info("Server closed successfully")
            code = 0
        else:
            logger.error(
                "Could not close %d connection(s) in %.0fs, forcefully shutting down",
                self.tracker.active,
                timeout,
            )
            code = 1

        self.exit_code = code
        self.state = ServerState.STOPPED
        return code

    def run(self) -> int:
        """Serve until a shutdown request, then shut down.

        Returns:
            Process exit code
        """
        self.start_background()
        try:
            while not self._shutdown_requested.wait(0.5):
                pass
        except KeyboardInterrupt:
            self.request_shutdown("SIGINT")
        return self.shutdown()


def install_signal_handlers(handle: ServerHandle):
    """Route SIGINT/SIGTERM to a graceful shutdown request."""

    def handle_signal(signum, frame):
        handle.request_shutdown(signal.Signals(signum).name)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def _fail(code: str, message: str):
    logger.error("Failed to start server: %s", message)
    raise StartupError(code, message)


def _log_startup(handle: ServerHandle):
    config = handle.config
    if handle.material:
        logger.info("HTTPS server running on %s", handle.url)
    else:
        logger.info("HTTP server running on %s", handle.url)
    logger.info("Serving files from: %s", config.build_path)
    logger.info("Environment: %s", config.environment)
    logger.info("Health check available at: %s/health", handle.url)

    if handle.material:
        logger.info("Certificate fingerprint: %s", handle.material.fingerprint)
        if handle.material.source is CertificateSource.GENERATED_SELF_SIGNED:
            logger.warning(
                "Using a self-signed certificate; browsers will warn until it is trusted"
            )
    elif not config.use_https:
        logger.info("Start with --https to serve over HTTPS")

    if not config.entry_document_path.is_file():
        logger.warning("Entry document not found at %s (build output missing?)", config.entry_document_path)


def start_server(
    config: ServerConfig,
    store: Optional[CertificateStore] = None,
    policy: Optional[AssetPolicy] = None,
    versions: Optional[VersionReader] = None,
) -> ServerHandle:
    """Bind the listener described by config.

    Chooses HTTPS when it is wanted and a certificate is available, falls
    back to HTTP when that is permitted, and fails otherwise.

    Returns:
        ServerHandle in LISTENING_HTTP or LISTENING_HTTPS state (not yet serving)

    Raises:
        StartupError: If the certificate is required but unavailable, or the
            port cannot be bound
    """
    material = None
    ssl_context = None

    if config.wants_https:
        store = store or CertificateStore(config)
        try:
            material = store.obtain()
            ssl_context = create_ssl_context(material)
        except (TLSError, ssl.SSLError, OSError) as e:
            reason = getattr(e, "message", str(e))
            material = None
            if config.https_required:
                _fail("E501", f"HTTPS certificate required but unavailable: {reason}")
            if not config.allow_http_fallback:
                _fail("E502", f"HTTPS unavailable and HTTP fallback disabled: {reason}")
            logger.warning("HTTPS certificate not ready (%s), starting HTTP server instead", reason)
    elif config.use_https:
        logger.info("HTTPS requested but disabled by configuration")

    app = Application(config, policy=policy, versions=versions)
    port = config.https_port if ssl_context else config.http_port
    try:
        httpd = SPAHTTPServer((config.bind, port), SPARequestHandler, app, ssl_context)
    except OSError as e:
        _fail("E503", f"Cannot bind {config.bind}:{port}: {e}")

    handle = ServerHandle(httpd, config, material=material, store=store if material else None)

    if material is not None and config.should_watch_certs:
        handle.watcher = start_watching(
            material.cert_path, material.key_path, handle.reload_certificate
        )

    _log_startup(handle)
    return handle
