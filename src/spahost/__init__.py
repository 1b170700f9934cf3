"""spahost: single-page application server with TLS certificate lifecycle.

Serves a pre-built SPA with per-file cache policy and route fallback, over
HTTP or HTTPS with a self-signed or externally managed certificate.
"""

from spahost.config import (
    CertMode,
    ConfigError,
    ServerConfig,
    load_config,
)
from spahost.tls import (
    CertificateMaterial,
    CertificateSource,
    CertificateStore,
    CertificateUnavailable,
    generate_self_signed_cert,
    get_cert_fingerprint,
)
from spahost.watcher import (
    CertificateWatcher,
    start_watching,
)
from spahost.assets import (
    AssetPolicy,
    AssetRule,
)
from spahost.version import (
    VersionKind,
    VersionReader,
)
from spahost.httpd import (
    ServerHandle,
    ServerState,
    StartupError,
    start_server,
)

__all__ = [
    # Config
    "CertMode",
    "ConfigError",
    "ServerConfig",
    "load_config",
    # TLS
    "CertificateMaterial",
    "CertificateSource",
    "CertificateStore",
    "CertificateUnavailable",
    "generate_self_signed_cert",
    "get_cert_fingerprint",
    # Watcher
    "CertificateWatcher",
    "start_watching",
    # Assets
    "AssetPolicy",
    "AssetRule",
    # Version
    "VersionKind",
    "VersionReader",
    # Server
    "ServerHandle",
    "ServerState",
    "StartupError",
    "start_server",
]
