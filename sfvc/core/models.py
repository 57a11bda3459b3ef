"""
sfvc.core.models — Pydantic schemas for single-file version records.

Every committed version of a tracked file is one immutable ``VersionRecord``.
Records are serialized as one tab-separated line of the version log:

    path  timestamp  version  based_on  path_signature  crc32  "description"

A file is identified solely by its absolute path; the SHA-1 of that path
(the *path signature*) namespaces the stored content so raw paths never end
up in storage filenames.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import sys
import zlib
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sfvc.core.errors import LogFormatError

VERSION_WIDTH = 4                          # zero padding of version numbers
FIELD_COUNT = 7
MAX_CHECKSUM = 0xFFFFFFFF

_RFC3339 = re.compile(
    r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})", re.ASCII
)


# ---------------------------------------------------------------------------
# Cross-platform directory helpers
# ---------------------------------------------------------------------------

def get_user_cache_dir() -> Path:
    """
    Return the per-user cache directory (not created).

    - Windows:  %LOCALAPPDATA%
    - macOS:    ~/Library/Caches
    - Linux:    $XDG_CACHE_HOME  (default ~/.cache)
    """
    if sys.platform == "win32":
        return Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches"
    return Path(os.environ.get("XDG_CACHE_HOME") or Path.home() / ".cache")


# ---------------------------------------------------------------------------
# Digests and field codecs
# ---------------------------------------------------------------------------

def path_signature(path: str) -> str:
    """Deterministic hex digest of *path*, stable for the lifetime of the file."""
    return hashlib.sha1(os.fsencode(path)).hexdigest()


def content_checksum(data: bytes) -> int:
    """Unsigned CRC-32 (IEEE) of *data*; detects corruption, never addresses content."""
    return zlib.crc32(data) & MAX_CHECKSUM


def format_version(version: int, width: int = VERSION_WIDTH) -> str:
    return f"{version:0{width}d}"


def format_timestamp(ts: datetime) -> str:
    """RFC 3339 with second precision; UTC is written as ``Z``."""
    text = ts.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 date-time; other ISO 8601 forms are rejected."""
    if not _RFC3339.fullmatch(text):
        raise ValueError(f"timestamp {text!r} is not RFC 3339")
    return datetime.fromisoformat(text)


def parse_unsigned(text: str) -> int:
    """Parse a plain run of ASCII digits (no sign, spaces or underscores)."""
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"{text!r} is not an unsigned decimal")
    return int(text)


def quote_description(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def unquote_description(field: str) -> str:
    """Inverse of :func:`quote_description`; unquoted legacy text is kept verbatim."""
    if not field.startswith('"'):
        return field
    value = json.loads(field)
    if not isinstance(value, str):
        raise ValueError("description is not a string literal")
    return value


def _now() -> datetime:
    return datetime.now().astimezone().replace(microsecond=0)


# ---------------------------------------------------------------------------
# Version Record — one line of the version log
# ---------------------------------------------------------------------------

class VersionRecord(BaseModel):
    """
    Immutable description of one committed version.

    ``based_on`` is the declared parent version of the same path, or 0 for a
    root.  It may point at any earlier version, which is how branches are
    expressed.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    timestamp: datetime = Field(default_factory=_now)
    version: int = Field(ge=1)
    based_on: int = Field(default=0, ge=0)
    path_signature: str
    content_checksum: int = Field(ge=0, le=MAX_CHECKSUM)
    description: str = ""

    @field_validator("path")
    @classmethod
    def _single_line_path(cls, value: str) -> str:
        if not value or any(c in value for c in "\t\r\n"):
            raise ValueError("path must be non-empty and free of tabs and line breaks")
        return value

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("timestamp must carry a UTC offset")
        return value

    @property
    def label(self) -> str:
        return format_version(self.version)

    @property
    def key(self) -> tuple[str, int]:
        return (self.path, self.version)

    def serialize(self, width: int = VERSION_WIDTH) -> str:
        """Render the log line (without terminator).  Inverse of :meth:`deserialize`."""
        return "\t".join(
            (
                self.path,
                format_timestamp(self.timestamp),
                format_version(self.version, width),
                format_version(self.based_on, width),
                self.path_signature,
                str(self.content_checksum),
                quote_description(self.description),
            )
        )

    @classmethod
    def deserialize(cls, line: str) -> "VersionRecord":
        """Parse one log line, raising :class:`LogFormatError` on any bad field."""
        parts = line.split("\t")
        if len(parts) != FIELD_COUNT:
            raise LogFormatError(
                f"malformed line: expected {FIELD_COUNT} fields, got {len(parts)}"
            )

        try:
            when = parse_timestamp(parts[1])
        except ValueError:
            raise LogFormatError("malformed timestamp") from None
        try:
            version = parse_unsigned(parts[2])
        except ValueError:
            raise LogFormatError("malformed version") from None
        try:
            based_on = parse_unsigned(parts[3])
        except ValueError:
            raise LogFormatError("malformed parent") from None
        try:
            checksum = parse_unsigned(parts[5])
        except ValueError:
            raise LogFormatError("malformed data crc") from None
        try:
            description = unquote_description(parts[6])
        except ValueError:
            raise LogFormatError("malformed description") from None

        try:
            return cls(
                path=parts[0],
                timestamp=when,
                version=version,
                based_on=based_on,
                path_signature=parts[4],
                content_checksum=checksum,
                description=description,
            )
        except ValidationError as exc:
            err = exc.errors()[0]
            field = ".".join(str(p) for p in err.get("loc", ())) or "record"
            raise LogFormatError(f"invalid {field}: {err['msg']}") from exc


class TrackedFile(BaseModel):
    """A tracked path together with its storage signature."""

    model_config = ConfigDict(frozen=True)

    path: str
    path_signature: str


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class SfvcConfig(BaseModel):
    """Runtime configuration for the SFVC store."""

    store_dir: Path = Field(default_factory=lambda: get_user_cache_dir() / "sfvc")
    version_width: int = VERSION_WIDTH
    strict_load: bool = True                # abort on the first malformed log line
    lock_commits: bool = True               # serialize commits across processes
    lock_timeout: float = 10.0              # seconds
    diff_command: str = "diff"

    @property
    def index_path(self) -> Path:
        return self.store_dir / "index"

    @property
    def objects_dir(self) -> Path:
        return self.store_dir / "objects"

    @property
    def lock_path(self) -> Path:
        return self.store_dir / "index.lock"

    def ensure_dirs(self) -> None:
        """Create the store and object directories (owner-only)."""
        for d in (self.store_dir, self.objects_dir):
            d.mkdir(mode=0o700, parents=True, exist_ok=True)

    @classmethod
    def for_user(cls, **overrides: Any) -> "SfvcConfig":
        """
        Build the configuration for the current user.

        Resolution order (highest priority first):
          1. Explicit ``overrides`` keyword arguments (``None`` values ignored)
          2. Environment variables (SFVC_HOME, SFVC_DIFF, SFVC_LOCK_COMMITS,
             SFVC_LOCK_TIMEOUT)
          3. Built-in defaults
        """
        overrides = {k: v for k, v in overrides.items() if v is not None}
        values: dict[str, Any] = {
            "lock_commits": _env_flag("SFVC_LOCK_COMMITS", True),
            "lock_timeout": float(os.getenv("SFVC_LOCK_TIMEOUT", "10")),
            "diff_command": os.getenv("SFVC_DIFF", "diff"),
        }
        home = os.getenv("SFVC_HOME")
        if home:
            values["store_dir"] = Path(home).expanduser()
        values.update(overrides)
        return cls(**values)
