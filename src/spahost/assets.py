"""Static asset delivery policy.

Maps request paths to cache/content-type headers and resolves every path
that does not name a real file under the build directory to the single
entry document, so the client-side router owns navigation.
"""

import logging
import mimetypes
import posixpath
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlsplit

logger = logging.getLogger(__name__)

ONE_YEAR_SECONDS = 31536000
CACHE_LONG_TERM = f"public, max-age={ONE_YEAR_SECONDS}"
CACHE_NO_CACHE = "no-cache"
CACHE_NO_STORE = "no-cache, no-store, must-revalidate"
# Applied when a rule leaves cache-control unset
CACHE_STATIC_DEFAULT = "public, max-age=86400"
NO_STORE_HEADERS = (("Pragma", "no-cache"), ("Expires", "0"))

CONTENT_TYPE_JS = "application/javascript; charset=utf-8"
CONTENT_TYPE_HTML = "text/html; charset=utf-8"
CONTENT_TYPE_JSON = "application/json; charset=utf-8"
CONTENT_TYPE_WASM = "application/wasm"
CONTENT_TYPE_DEFAULT = "application/octet-stream"

VERSION_DOCUMENT_NAME = "version.json"

mimetypes.add_type("application/wasm", ".wasm")
mimetypes.add_type("application/manifest+json", ".webmanifest")


class AssetClass(Enum):
    SCRIPT = "script"
    STYLESHEET = "stylesheet"
    MARKUP = "markup"
    WASM = "wasm"
    JSON = "json"
    VERSION = "version"
    OTHER = "other"


@dataclass(frozen=True)
class AssetRule:
    """Header policy for one class of asset."""

    asset_class: AssetClass
    cache_control: Optional[str] = None
    content_type: Optional[str] = None
    extra_headers: tuple = ()


DEFAULT_RULE = AssetRule(AssetClass.OTHER)


class EntryDocumentUnavailable(Exception):
    """The SPA entry document cannot be read."""

    def __init__(self, path: Path, reason: str):
        self.code = "E600"
        self.path = path
        self.message = f"Entry document unavailable: {reason}"
        super().__init__(f"{self.code}: {self.message}")


def _request_path(request_path: str) -> str:
    """Decoded path component of a request target."""
    return unquote(urlsplit(request_path).path)


class AssetPolicy:
    """Per-file header policy plus SPA fallback resolution."""

    def __init__(
        self,
        root: Path,
        entry_document: str = "index.html",
        strict_html_cache: bool = False,
    ):
        self.root = Path(root)
        self.entry_document = entry_document
        self.strict_html_cache = strict_html_cache
        self.rules = self._build_rules()

    @classmethod
    def from_config(cls, config) -> "AssetPolicy":
        return cls(
            root=config.build_path,
            entry_document=config.entry_document,
            strict_html_cache=config.strict_html_cache,
        )

    @property
    def entry_path(self) -> Path:
        return self.root / self.entry_document

    def _build_rules(self) -> list:
        """Suffix table, most specific first."""
        if self.strict_html_cache:
            html = AssetRule(AssetClass.MARKUP, CACHE_NO_STORE, CONTENT_TYPE_HTML, NO_STORE_HEADERS)
        else:
            html = AssetRule(AssetClass.MARKUP, CACHE_NO_CACHE, CONTENT_TYPE_HTML)
        return [
            ("/" + VERSION_DOCUMENT_NAME,
             AssetRule(AssetClass.VERSION, CACHE_NO_STORE, CONTENT_TYPE_JSON, NO_STORE_HEADERS)),
            (".js", AssetRule(AssetClass.SCRIPT, CACHE_LONG_TERM, CONTENT_TYPE_JS)),
            (".css", AssetRule(AssetClass.STYLESHEET, CACHE_LONG_TERM)),
            (".wasm", AssetRule(AssetClass.WASM, None, CONTENT_TYPE_WASM)),
            (".html", html),
            (".json", AssetRule(AssetClass.JSON, None, CONTENT_TYPE_JSON)),
        ]

    def classify(self, request_path: str) -> AssetRule:
        """Return the header rule for a request path (DEFAULT_RULE if none match)."""
        return self._rule_for(_request_path(str(request_path)))

    def _rule_for(self, path: str) -> AssetRule:
        """Suffix match on an already decoded POSIX path."""
        path = "/" + path.lstrip("/").lower()
        for suffix, rule in self.rules:
            if path.endswith(suffix):
                return rule
        return DEFAULT_RULE

    def headers_for(self, file_path: Path) -> dict:
        """Response headers for serving file_path."""
        file_path = Path(file_path)
        try:
            relative = file_path.resolve().relative_to(self.root.resolve()).as_posix()
        except ValueError:
            relative = file_path.name
        rule = self._rule_for(relative)
        content_type = rule.content_type
        if content_type is None:
            content_type, _ = mimetypes.guess_type(file_path.name)
            content_type = content_type or CONTENT_TYPE_DEFAULT
        headers = {
            "Content-Type": content_type,
            "Cache-Control": rule.cache_control or CACHE_STATIC_DEFAULT,
        }
        headers.update(rule.extra_headers)
        return headers

    def _candidate(self, request_path: str) -> Optional[Path]:
        """Existing file under root for request_path, if any."""
        path = _request_path(request_path)
        if "\x00" in path:
            return None
        normalized = posixpath.normpath("/" + path.replace("\\", "/")).lstrip("/")
        if not normalized or normalized == ".":
            return None

        root = self.root.resolve()
        candidate = (root / normalized).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            logger.warning("Rejected path outside asset root: %s", request_path)
            return None

        if candidate.is_dir():
            candidate = candidate / self.entry_document
        if candidate.is_file():
            return candidate
        return None

    def resolve(self, request_path: str) -> Path:
        """Map a request path to the file to serve.

        Paths that don't name an existing file resolve to the entry document.
        """
        return self._candidate(request_path) or self.entry_path

    def is_fallback(self, request_path: str) -> bool:
        return self._candidate(request_path) is None

    def read_entry_document(self) -> bytes:
        """Read the entry document.

        Raises:
            EntryDocumentUnavailable: If the build output is missing or unreadable
        """
        try:
            return self.entry_path.read_bytes()
        except OSError as e:
            raise EntryDocumentUnavailable(self.entry_path, e.strerror or str(e)) from e
