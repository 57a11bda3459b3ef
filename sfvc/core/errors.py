"""
sfvc.core.errors — Failure taxonomy for the versioning engine.

Every error carries a short ``kind`` label that the CLI prints in front of
the message.  I/O problems are not wrapped: ``OSError`` propagates as-is.
"""

from __future__ import annotations


class SfvcError(Exception):
    """Base class for all SFVC errors."""

    kind = "error"


class LogFormatError(SfvcError):
    """A single log line could not be parsed."""

    kind = "malformed record"


class LogLoadError(SfvcError):
    """The version log contains a malformed line; the load was aborted."""

    kind = "load failure"

    def __init__(self, line_number: int, reason: str, line: str = "") -> None:
        self.line_number = line_number
        self.reason = reason
        self.line = line
        super().__init__(f"can't load record at line {line_number}: {reason}")


class IncompleteLogError(SfvcError):
    """Commits are refused while malformed log lines were skipped."""

    kind = "incomplete log"

    def __init__(self, skipped: int) -> None:
        self.skipped = skipped
        super().__init__(
            f"{skipped} malformed index line(s) were skipped; "
            "version numbers may collide, refusing to commit"
        )


class InvalidBaseError(SfvcError):
    kind = "invalid base"

    def __init__(self, path: str, based_on: int, current: int) -> None:
        self.path = path
        self.based_on = based_on
        self.current = current
        super().__init__(
            f"invalid base version {based_on} for {path} (current version is {current})"
        )


class VersionNotFoundError(SfvcError):
    kind = "not found"

    def __init__(self, path: str, version: int) -> None:
        self.path = path
        self.version = version
        super().__init__(f"cannot find version {version} for {path}")


class CorruptionError(SfvcError):
    """Stored bytes no longer match the checksum recorded at commit time."""

    kind = "corruption"

    def __init__(self, path: str, version: int, expected: int, actual: int) -> None:
        self.path = path
        self.version = version
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"corrupted content for {path} version {version}: "
            f"wrong crc, expected {expected} got {actual}"
        )


class InconsistentLogError(SfvcError):
    """A record declares a parent version that is not in the log."""

    kind = "inconsistent log"

    def __init__(self, path: str, version: int, based_on: int) -> None:
        self.path = path
        self.version = version
        self.based_on = based_on
        super().__init__(
            f"version {version} of {path} is based on missing version {based_on}"
        )


class UnsupportedPathError(SfvcError):
    """The path cannot be represented in a single log line."""

    kind = "unsupported path"

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"cannot track {path!r}: tabs and line breaks are not allowed")


class LockTimeoutError(SfvcError):
    kind = "lock timeout"

    def __init__(self, lock_path: str, timeout: float) -> None:
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(f"could not acquire {lock_path} within {timeout:g}s")
