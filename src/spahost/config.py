"""Server configuration.

Configuration is assembled once at startup from, in increasing precedence:
- built-in defaults
- an optional YAML file (SPAHOST_CONFIG or --config)
- environment variables (SPAHOST_*, plus the legacy PORT/HTTPS_PORT/USE_HTTPS/NODE_ENV)
- command line overrides

The result is an immutable ServerConfig snapshot that is shared read-only
by the certificate store, the asset policy and the listener.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

import yaml


DEFAULT_HTTP_PORT = 6001
DEFAULT_HTTPS_PORT = 6443
DEFAULT_BIND = "0.0.0.0"
DEFAULT_ENVIRONMENT = "development"
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
DEFAULT_KEEP_ALIVE_TIMEOUT = 5.0
DEFAULT_ENTRY_DOCUMENT = "index.html"
DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:6000",
    "http://localhost:6001",
    "https://localhost:6443",
    "http://localhost:3001",
)

DEVELOPMENT_ENVIRONMENTS = frozenset({"development", "dev", "local", "test"})

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigError(Exception):
    """Configuration error."""

    def __init__(self, message: str, code: str = "E001"):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class CertMode(Enum):
    """Who owns the certificate files on disk."""

    SELF_SIGNED = "self-signed"
    EXTERNAL = "external"

    @classmethod
    def parse(cls, value: str) -> "CertMode":
        normalized = str(value).strip().lower().replace("_", "-")
        for mode in cls:
            if mode.value == normalized:
                return mode
        choices = ", ".join(m.value for m in cls)
        raise ConfigError(f"Invalid cert mode '{value}' (expected one of: {choices})")


@dataclass(frozen=True)
class ServerConfig:
    """Immutable server configuration snapshot."""

    http_port: int = DEFAULT_HTTP_PORT
    https_port: int = DEFAULT_HTTPS_PORT
    use_https: bool = False
    https_enabled: bool = True
    cert_path: Path = field(default_factory=lambda: Path("localhost.crt"))
    key_path: Path = field(default_factory=lambda: Path("localhost.key"))
    build_path: Path = field(default_factory=lambda: Path("build") / "web")
    version_file: Path = field(default_factory=lambda: Path("version.json"))
    allowed_origins: tuple = DEFAULT_ALLOWED_ORIGINS
    environment: str = DEFAULT_ENVIRONMENT
    bind: str = DEFAULT_BIND
    cert_mode: CertMode = CertMode.SELF_SIGNED
    watch_certs: Optional[bool] = None
    allow_http_fallback: bool = True
    entry_document: str = DEFAULT_ENTRY_DOCUMENT
    strict_html_cache: bool = False
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    keep_alive_timeout: float = DEFAULT_KEEP_ALIVE_TIMEOUT
    extra_subject_names: tuple = ()

    def __post_init__(self):
        # frozen: coerce through object.__setattr__
        for name in ("cert_path", "key_path", "build_path", "version_file"):
            value = getattr(self, name)
            if isinstance(value, str):
                object.__setattr__(self, name, Path(value))
        if isinstance(self.cert_mode, str):
            object.__setattr__(self, "cert_mode", CertMode.parse(self.cert_mode))
        if isinstance(self.allowed_origins, (list, str)):
            object.__setattr__(self, "allowed_origins", _parse_origins(self.allowed_origins))
        if isinstance(self.extra_subject_names, list):
            object.__setattr__(self, "extra_subject_names", tuple(self.extra_subject_names))

        for name in ("http_port", "https_port"):
            port = getattr(self, name)
            if not isinstance(port, int) or not 0 <= port <= 65535:
                raise ConfigError(f"Invalid {name}: {port!r}")
        if self.shutdown_timeout <= 0:
            raise ConfigError(f"Invalid shutdown_timeout: {self.shutdown_timeout!r}")

    @property
    def wants_https(self) -> bool:
        """HTTPS was requested and is not switched off."""
        return self.use_https and self.https_enabled

    @property
    def https_required(self) -> bool:
        """Externally managed certificates leave no HTTP fallback."""
        return self.cert_mode is CertMode.EXTERNAL

    @property
    def should_watch_certs(self) -> bool:
        if self.watch_certs is None:
            return self.cert_mode is CertMode.EXTERNAL
        return self.watch_certs

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in DEVELOPMENT_ENVIRONMENTS

    @property
    def entry_document_path(self) -> Path:
        return self.build_path / self.entry_document

    @property
    def build_version_file(self) -> Path:
        return self.build_path / "version.json"

    def with_overrides(self, **overrides) -> "ServerConfig":
        """Return a copy with non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self


# (env var names, field, parser); first env var that is set wins
_ENV_FIELDS = [
    (("SPAHOST_PORT", "PORT"), "http_port", "int"),
    (("SPAHOST_HTTPS_PORT", "HTTPS_PORT"), "https_port", "int"),
    (("SPAHOST_USE_HTTPS", "USE_HTTPS"), "use_https", "bool"),
    (("SPAHOST_HTTPS_ENABLED",), "https_enabled", "bool"),
    (("SPAHOST_CERT",), "cert_path", "path"),
    (("SPAHOST_KEY",), "key_path", "path"),
    (("SPAHOST_BUILD_PATH",), "build_path", "path"),
    (("SPAHOST_VERSION_FILE",), "version_file", "path"),
    (("SPAHOST_ENV", "NODE_ENV"), "environment", "str"),
    (("SPAHOST_BIND",), "bind", "str"),
    (("SPAHOST_CERT_MODE",), "cert_mode", "mode"),
    (("SPAHOST_WATCH_CERTS",), "watch_certs", "bool"),
    (("SPAHOST_HTTP_FALLBACK",), "allow_http_fallback", "bool"),
    (("SPAHOST_ALLOWED_ORIGINS",), "allowed_origins", "origins"),
    (("SPAHOST_STRICT_HTML_CACHE",), "strict_html_cache", "bool"),
    (("SPAHOST_SHUTDOWN_TIMEOUT",), "shutdown_timeout", "float"),
]

_YAML_FIELDS = {
    "http_port": "int",
    "https_port": "int",
    "use_https": "bool",
    "https_enabled": "bool",
    "cert_path": "path",
    "key_path": "path",
    "build_path": "path",
    "version_file": "path",
    "environment": "str",
    "bind": "str",
    "cert_mode": "mode",
    "watch_certs": "bool",
    "allow_http_fallback": "bool",
    "allowed_origins": "origins",
    "entry_document": "str",
    "strict_html_cache": "bool",
    "shutdown_timeout": "float",
    "keep_alive_timeout": "float",
    "extra_subject_names": "list",
}


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _parse_origins(value) -> tuple:
    if isinstance(value, str):
        value = value.split(",")
    return tuple(o.strip() for o in value if o and o.strip())


def _convert(name: str, kind: str, value):
    try:
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
        if kind == "bool":
            return _parse_bool(value)
        if kind == "path":
            return Path(os.path.expanduser(str(value)))
        if kind == "mode":
            return CertMode.parse(value)
        if kind == "origins":
            return _parse_origins(value)
        if kind == "list":
            return tuple(str(v) for v in value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e


def load_yaml_config(path: Path) -> dict:
    """Load config values from a YAML file.

    The file may hold the keys at top level or under a ``server:`` mapping.

    Raises:
        ConfigError: If the file is unreadable or malformed
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    data = data.get("server", data)

    values = {}
    for key, raw in data.items():
        kind = _YAML_FIELDS.get(key)
        if kind is None:
            raise ConfigError(f"Unknown config key '{key}' in {path}")
        values[key] = _convert(key, kind, raw)
    return values


def load_env_config(environ: Mapping[str, str]) -> dict:
    """Extract config values from environment variables."""
    values = {}
    for names, field_name, kind in _ENV_FIELDS:
        for name in names:
            if name in environ:
                values[field_name] = _convert(name, kind, environ[name])
                break
    return values


def load_config(
    config_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides,
) -> ServerConfig:
    """Build the ServerConfig snapshot.

    Args:
        config_file: YAML config file (default: $SPAHOST_CONFIG if set)
        environ: Environment mapping (default: os.environ)
        **overrides: Command line values; None means "not given"

    Returns:
        Frozen ServerConfig

    Raises:
        ConfigError: On any invalid value
    """
    if environ is None:
        environ = os.environ

    if config_file is None and environ.get("SPAHOST_CONFIG"):
        config_file = Path(environ["SPAHOST_CONFIG"])

    values = {}
    if config_file is not None:
        values.update(load_yaml_config(Path(config_file)))
    values.update(load_env_config(environ))
    values.update({k: v for k, v in overrides.items() if v is not None})

    return ServerConfig(**values)
