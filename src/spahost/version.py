"""Version document endpoints.

Serves the declared version file and the version file embedded in the
build output. Both are re-read on every request because the build pipeline
may replace them while the server keeps running.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

WEB_BUILD_SOURCE = "web-build"


class VersionKind(Enum):
    DECLARED = "declared"
    CURRENT_BUILD = "currentBuild"


class SourceLabel(Enum):
    DECLARED = "declared"
    FROM_BUILD_OUTPUT = "fromBuildOutput"


class VersionError(Exception):
    """Version lookup error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


class VersionNotFound(VersionError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__("E700", f"Version file not found: {path}", 404)


class VersionReadError(VersionError):
    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__("E701", f"Failed to read {path}: {reason}", 500)


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    moment = moment or datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class VersionDocument:
    """A version file as read at one instant."""

    data: dict
    source_label: SourceLabel
    read_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict:
        payload = dict(self.data)
        if self.source_label is SourceLabel.FROM_BUILD_OUTPUT:
            payload["source"] = WEB_BUILD_SOURCE
        payload["serverTimestamp"] = utc_timestamp(self.read_at)
        return payload


class VersionReader:
    """Reads version documents from their fixed locations."""

    def __init__(self, declared_path: Path, build_path: Path):
        self.locations = {
            VersionKind.DECLARED: (Path(declared_path), SourceLabel.DECLARED),
            VersionKind.CURRENT_BUILD: (Path(build_path), SourceLabel.FROM_BUILD_OUTPUT),
        }

    @classmethod
    def from_config(cls, config) -> "VersionReader":
        return cls(config.version_file, config.build_version_file)

    def get(self, kind: VersionKind) -> VersionDocument:
        """Read the version document for kind.

        Raises:
            VersionNotFound: If the file doesn't exist
            VersionReadError: If it can't be read or isn't a JSON object
        """
        path, label = self.locations[kind]
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise VersionNotFound(path) from e
        except (OSError, UnicodeDecodeError) as e:
            raise VersionReadError(path, str(e)) from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise VersionReadError(path, f"invalid JSON ({e.msg} at line {e.lineno})") from e
        if not isinstance(data, dict):
            raise VersionReadError(path, "expected a JSON object")

        return VersionDocument(data=data, source_label=label)


def _error_response(error: str, message: str = "") -> dict:
    body = {"error": error}
    if message:
        body["message"] = message
    return body


def handle_version_request(
    reader: VersionReader,
    kind: VersionKind,
    development: bool = False,
) -> Tuple[dict, int]:
    """Handle /api/version and /api/current-version.

    Args:
        reader: VersionReader instance
        kind: Which version document to read
        development: Include error details in 500 responses

    Returns:
        Tuple of (response_dict, http_status)
    """
    try:
        document = reader.get(kind)
    except VersionNotFound as e:
        logger.warning("%s", e.message)
        return _error_response("Version file not found"), 404
    except VersionReadError as e:
        logger.error("Error reading version file: %s", e.message)
        message = e.message if development else "Something went wrong"
        return _error_response("Failed to read version file", message), 500

    return document.to_payload(), 200
