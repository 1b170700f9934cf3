"""TLS certificate management for the server.

Locates, validates and (when permitted) generates the self-signed key and
certificate pair that protects the HTTPS listener. Certificates generated
here are persisted so later startups reuse them.
"""

import ipaddress
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from spahost.config import CertMode, ServerConfig

logger = logging.getLogger(__name__)

# Certificate defaults
DEFAULT_COMMON_NAME = "localhost"
DEFAULT_ORGANIZATION = "spahost"
DEFAULT_KEY_SIZE = 2048
DEFAULT_SUBJECT_NAMES = ("localhost", "127.0.0.1")


class CertificateSource(Enum):
    """Where a certificate came from."""

    GENERATED_SELF_SIGNED = "generated-self-signed"
    LOADED_FROM_DISK = "loaded-from-disk"
    EXTERNALLY_MANAGED = "externally-managed"

    @property
    def may_overwrite(self) -> bool:
        """Whether the store is allowed to replace the files on disk."""
        return self is not CertificateSource.EXTERNALLY_MANAGED


class TLSError(Exception):
    """Certificate error with error code."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class CertificateUnavailable(TLSError):
    """No usable certificate material."""

    def __init__(self, message: str):
        super().__init__("E400", message)


class CertificateGenerationError(TLSError):
    """Self-signed certificate could not be generated or persisted."""

    def __init__(self, message: str):
        super().__init__("E401", message)


@dataclass(frozen=True)
class CertificateMaterial:
    """A parsed key/certificate pair."""

    private_key: bytes
    certificate: bytes
    not_before: datetime
    not_after: datetime
    subject_names: frozenset
    source: CertificateSource
    cert_path: Path
    key_path: Path
    fingerprint: str

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """True when now falls inside the validity window."""
        now = now or datetime.now(timezone.utc)
        return self.not_before <= now <= self.not_after

    def covers(self, hostname: str) -> bool:
        """True when hostname (DNS name or IP literal) is a subject name."""
        return _normalize_name(hostname) in self.subject_names

    @classmethod
    def from_pem(
        cls,
        certificate: bytes,
        private_key: bytes,
        source: CertificateSource,
        cert_path: Path,
        key_path: Path,
    ) -> "CertificateMaterial":
        """Parse PEM bytes into material.

        Raises:
            ValueError: If either PEM is malformed or the key does not match
        """
        cert = x509.load_pem_x509_certificate(certificate)
        try:
            key = serialization.load_pem_private_key(private_key, password=None)
        except (TypeError, UnsupportedAlgorithm) as e:
            raise ValueError(f"Unsupported private key: {e}") from e

        if not _public_keys_equal(cert.public_key(), key.public_key()):
            raise ValueError("Certificate does not match private key")

        return cls(
            private_key=private_key,
            certificate=certificate,
            not_before=_not_before(cert),
            not_after=_not_after(cert),
            subject_names=frozenset(_subject_names(cert)),
            source=source,
            cert_path=cert_path,
            key_path=key_path,
            fingerprint=_format_fingerprint(cert.fingerprint(hashes.SHA256())),
        )


def _normalize_name(name: str) -> str:
    try:
        return str(ipaddress.ip_address(name))
    except ValueError:
        return name.lower()


def _public_keys_equal(a, b) -> bool:
    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return a.public_bytes(*fmt) == b.public_bytes(*fmt)


def _not_before(cert: x509.Certificate) -> datetime:
    if hasattr(cert, "not_valid_before_utc"):
        return cert.not_valid_before_utc
    return cert.not_valid_before.replace(tzinfo=timezone.utc)


def _not_after(cert: x509.Certificate) -> datetime:
    if hasattr(cert, "not_valid_after_utc"):
        return cert.not_valid_after_utc
    return cert.not_valid_after.replace(tzinfo=timezone.utc)


def _subject_names(cert: x509.Certificate) -> set:
    names = set()
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        san = None
    if san is not None:
        names.update(n.lower() for n in san.get_values_for_type(x509.DNSName))
        names.update(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        names.add(_normalize_name(str(attr.value)))
    return names


def _format_fingerprint(digest: bytes) -> str:
    return ":".join(f"{b:02X}" for b in digest)


def get_cert_fingerprint(cert_pem: bytes) -> str:
    """Get SHA256 fingerprint of a PEM certificate.

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")

    Raises:
        ValueError: If the PEM cannot be parsed
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    return _format_fingerprint(cert.fingerprint(hashes.SHA256()))


def verify_cert_key_match(cert_path: Path, key_path: Path) -> bool:
    """Verify that a certificate and key match.

    Returns:
        True if certificate and key match
    """
    try:
        cert = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
        key = serialization.load_pem_private_key(Path(key_path).read_bytes(), password=None)
    except (OSError, ValueError, TypeError, UnsupportedAlgorithm):
        return False
    return _public_keys_equal(cert.public_key(), key.public_key())


def add_one_year(moment: datetime) -> datetime:
    """Same calendar date one year later (Feb 29 maps to Feb 28)."""
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        return moment.replace(year=moment.year + 1, day=28)


def _san_entry(name: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(name))
    except ValueError:
        return x509.DNSName(name)


def generate_self_signed_cert(
    common_name: str = DEFAULT_COMMON_NAME,
    subject_names: Iterable[str] = DEFAULT_SUBJECT_NAMES,
    key_size: int = DEFAULT_KEY_SIZE,
    organization: str = DEFAULT_ORGANIZATION,
    now: Optional[datetime] = None,
) -> tuple[bytes, bytes]:
    """Generate a self-signed certificate.

    Creates a certificate with:
    - CN = common_name, issuer = subject
    - SAN = subject_names (DNS names and IP literals)
    - CA=true with server and client auth usages, so both browsers and
      local tooling accept it once trusted
    - Validity = one calendar year from now

    Args:
        common_name: Subject/issuer CN
        subject_names: SAN entries
        key_size: RSA key size in bits
        organization: Subject/issuer O
        now: Generation time (default: current UTC time)

    Returns:
        (cert_pem, key_pem) tuple
    """
    now = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
    ])

    # Preserve order, drop duplicates
    sans = []
    for entry in subject_names:
        if entry not in sans:
            sans.append(entry)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(add_one_year(now))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,
                key_encipherment=True,
                data_encipherment=True,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=False,
        )
        .add_extension(
            x509.ExtendedKeyUsage([
                ExtendedKeyUsageOID.SERVER_AUTH,
                ExtendedKeyUsageOID.CLIENT_AUTH,
                ExtendedKeyUsageOID.CODE_SIGNING,
                ExtendedKeyUsageOID.EMAIL_PROTECTION,
                ExtendedKeyUsageOID.TIME_STAMPING,
            ]),
            critical=False,
        )
        .add_extension(x509.SubjectAlternativeName([_san_entry(n) for n in sans]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def _atomic_write(path: Path, data: bytes, mode: int):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_material(cert_path: Path, key_path: Path, cert_pem: bytes, key_pem: bytes):
    """Persist a key/certificate pair.

    The key is written first with restrictive permissions; each file is
    replaced atomically so readers never see a partial write.
    """
    _atomic_write(Path(key_path), key_pem, 0o600)
    _atomic_write(Path(cert_path), cert_pem, 0o644)


def load_material(
    cert_path: Path,
    key_path: Path,
    source: CertificateSource = CertificateSource.LOADED_FROM_DISK,
) -> CertificateMaterial:
    """Read and parse material from disk.

    Raises:
        FileNotFoundError: If either file is missing
        OSError: If either file is unreadable
        ValueError: If the files cannot be parsed or do not match
    """
    cert_path = Path(cert_path)
    key_path = Path(key_path)
    if not cert_path.exists():
        raise FileNotFoundError(f"Certificate not found: {cert_path}")
    if not key_path.exists():
        raise FileNotFoundError(f"Key not found: {key_path}")

    return CertificateMaterial.from_pem(
        certificate=cert_path.read_bytes(),
        private_key=key_path.read_bytes(),
        source=source,
        cert_path=cert_path,
        key_path=key_path,
    )


def create_ssl_context(material: CertificateMaterial) -> ssl.SSLContext:
    """Build a server-side SSL context for the material."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(
        certfile=str(material.cert_path),
        keyfile=str(material.key_path),
    )
    return context


class CertificateStore:
    """Provides the key/certificate pair for the HTTPS listener."""

    def __init__(self, config: ServerConfig, key_size: int = DEFAULT_KEY_SIZE):
        self.config = config
        self.key_size = key_size

    @property
    def cert_path(self) -> Path:
        return self.config.cert_path

    @property
    def key_path(self) -> Path:
        return self.config.key_path

    @property
    def generation_allowed(self) -> bool:
        return self.config.cert_mode is CertMode.SELF_SIGNED

    @property
    def subject_names(self) -> tuple:
        names = list(DEFAULT_SUBJECT_NAMES)
        names.extend(self.config.extra_subject_names)
        return tuple(names)

    def _loaded_source(self) -> CertificateSource:
        if self.config.cert_mode is CertMode.EXTERNAL:
            return CertificateSource.EXTERNALLY_MANAGED
        return CertificateSource.LOADED_FROM_DISK

    def _files_present(self) -> bool:
        return (
            os.access(self.cert_path, os.R_OK)
            and os.access(self.key_path, os.R_OK)
        )

    def load(self) -> CertificateMaterial:
        """Load existing material without falling back to generation.

        Raises:
            CertificateUnavailable: If files are missing, unreadable or invalid
        """
        try:
            material = load_material(self.cert_path, self.key_path, self._loaded_source())
        except (OSError, ValueError) as e:
            raise CertificateUnavailable(f"Cannot load certificate: {e}") from e
        self._warn_if_unsuitable(material)
        return material

    def obtain(self) -> CertificateMaterial:
        """Return usable material, generating it when permitted.

        Returns:
            CertificateMaterial tagged with its source

        Raises:
            CertificateUnavailable: If no material exists and generation is not
                permitted, or existing externally managed files are invalid
            CertificateGenerationError: If generation or persisting fails
        """
        if self._files_present():
            try:
                material = self.load()
                logger.info("Using existing certificate: %s", self.cert_path)
                return material
            except CertificateUnavailable as e:
                if not self.generation_allowed:
                    raise
                logger.warning("%s; regenerating self-signed certificate", e.message)

        if not self.generation_allowed:
            raise CertificateUnavailable(
                f"Externally managed certificate not found: {self.cert_path}, {self.key_path}"
            )

        return self.generate()

    def generate(self) -> CertificateMaterial:
        """Generate, persist and return a self-signed pair.

        Raises:
            CertificateGenerationError: On any generation or I/O failure
        """
        logger.info("Generating self-signed certificate for %s", ", ".join(self.subject_names))
        try:
            cert_pem, key_pem = generate_self_signed_cert(
                subject_names=self.subject_names,
                key_size=self.key_size,
            )
            write_material(self.cert_path, self.key_path, cert_pem, key_pem)
            material = CertificateMaterial.from_pem(
                certificate=cert_pem,
                private_key=key_pem,
                source=CertificateSource.GENERATED_SELF_SIGNED,
                cert_path=self.cert_path,
                key_path=self.key_path,
            )
        except (OSError, ValueError, UnsupportedAlgorithm) as e:
            raise CertificateGenerationError(f"Failed to generate certificate: {e}") from e

        logger.info("Certificate written to %s (key: %s)", self.cert_path, self.key_path)
        logger.info("Certificate fingerprint (SHA256): %s", material.fingerprint)
        return material

    def _warn_if_unsuitable(self, material: CertificateMaterial):
        now = datetime.now(timezone.utc)
        if not material.is_valid(now):
            logger.warning(
                "Certificate %s is outside its validity window (%s to %s)",
                material.cert_path,
                material.not_before.isoformat(),
                material.not_after.isoformat(),
            )
        elif material.not_after - now < timedelta(days=14):
            logger.warning("Certificate %s expires on %s", material.cert_path, material.not_after.isoformat())
        missing = [n for n in self.subject_names if not material.covers(n)]
        if missing:
            logger.warning("Certificate %s does not cover: %s", material.cert_path, ", ".join(missing))
