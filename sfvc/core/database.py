"""
sfvc.core.database — Two-tiered version store.

Tier 1 (Log):     append-only text index, one VersionRecord per line,
                  loaded fully into memory at startup.
Tier 2 (Content): one raw blob per (path signature, version) on local disk.

Content is always made durable before the log line that references it, so a
crash can leave an orphaned blob but never a log entry without content.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sfvc.core.errors import (
    CorruptionError,
    IncompleteLogError,
    LockTimeoutError,
    LogFormatError,
    LogLoadError,
    VersionNotFoundError,
)
from sfvc.core.models import (
    VERSION_WIDTH,
    SfvcConfig,
    TrackedFile,
    VersionRecord,
    content_checksum,
    format_version,
)

logger = logging.getLogger("sfvc.database")

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"                # keep undecodable path bytes intact


def _fsync_directory(dir_path: Path) -> None:
    """Sync a directory entry after a rename (not supported everywhere)."""
    try:
        fd = os.open(str(dir_path), os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError as exc:
        logger.debug("Directory fsync unavailable for %s: %s", dir_path, exc)
        return
    try:
        os.fsync(fd)
    except OSError as exc:
        logger.debug("Directory fsync failed for %s: %s", dir_path, exc)
    finally:
        os.close(fd)


def _is_process_alive(pid: int) -> bool:
    if sys.platform == "win32":
        return True                         # signal 0 would terminate the process
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True                         # exists, owned by another user
    return True


def _is_lock_stale(lock_path: Path, grace: float = 1.0) -> bool:
    """
    True when the lock owner is gone.

    A lock without a readable PID is only stale once it is older than
    *grace* seconds, since its owner may still be writing the PID.
    """
    try:
        text = lock_path.read_text(encoding="ascii").strip()
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return False
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Lock file %s unreadable: %s", lock_path, exc)
        return True

    if not (text.isascii() and text.isdigit()):
        return age > grace
    pid = int(text)
    if pid == os.getpid():
        return False
    if not _is_process_alive(pid):
        logger.warning("Detected stale lock %s from dead process %d", lock_path, pid)
        return True
    return False


@contextmanager
def exclusive_lock(lock_path: Path, timeout: float, poll: float = 0.05) -> Iterator[None]:
    """
    Hold an exclusive lock file for the duration of the block.

    The lock is a plain ``O_CREAT | O_EXCL`` file containing the owner PID.
    A lock whose owner process no longer exists is removed and retried.
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            break
        except FileExistsError:
            if _is_lock_stale(lock_path):
                lock_path.unlink(missing_ok=True)
                logger.info("Removed stale lock %s", lock_path)
                continue
            if time.monotonic() >= deadline:
                raise LockTimeoutError(str(lock_path), timeout) from None
            time.sleep(poll)
    try:
        try:
            os.write(fd, f"{os.getpid()}\n".encode())
        finally:
            os.close(fd)
        yield
    finally:
        lock_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Tier 1 — Version Log
# ---------------------------------------------------------------------------

class VersionLog:
    """Append-only log of every committed version across all tracked paths."""

    def __init__(self, index_path: Path, width: int = VERSION_WIDTH) -> None:
        self._path = index_path
        self._width = width
        self._strict = True
        self._records: list[VersionRecord] = []
        self.load_errors: list[LogLoadError] = []

    @property
    def path(self) -> Path:
        return self._path

    @property
    def records(self) -> list[VersionRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    # -- Loading -----------------------------------------------------------

    def load(self, strict: bool = True) -> list[VersionRecord]:
        """
        Read the whole log into memory.

        In strict mode the first malformed line raises :class:`LogLoadError`
        and nothing is loaded.  Otherwise malformed lines are skipped and
        collected in ``load_errors``.
        """
        self._strict = strict
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.touch(mode=0o600)

        records: list[VersionRecord] = []
        errors: list[LogLoadError] = []
        seen: set[tuple[str, int]] = set()
        raw = self._path.read_bytes()
        for number, chunk in enumerate(raw.split(b"\n"), start=1):
            if not chunk.strip():
                continue
            line = chunk.decode(_ENCODING, _ERRORS)
            try:
                record = VersionRecord.deserialize(line)
            except LogFormatError as exc:
                err = LogLoadError(number, str(exc), line)
                if strict:
                    raise err from exc
                logger.warning("Skipping malformed record at line %d: %s", number, exc)
                errors.append(err)
                continue
            if record.key in seen:
                logger.warning(
                    "Duplicate version %s for %s at line %d",
                    record.label, record.path, number,
                )
            seen.add(record.key)
            records.append(record)

        self._records = records
        self.load_errors = errors
        logger.debug("Loaded %d records from %s", len(records), self._path)
        return list(records)

    def reload(self) -> list[VersionRecord]:
        """Re-read the log from disk with the strictness of the last load."""
        return self.load(strict=self._strict)

    # -- Writing -----------------------------------------------------------

    def append(self, record: VersionRecord) -> None:
        """
        Durably append *record*.  The caller must have already made the
        record's content durable in the ContentStore.
        """
        line = record.serialize(self._width) + "\n"
        with open(self._path, "a", encoding=_ENCODING, errors=_ERRORS, newline="\n") as fout:
            fout.write(line)
            fout.flush()
            os.fsync(fout.fileno())
        self._records.append(record)

    # -- Queries -----------------------------------------------------------

    def current_version(self, path: str) -> int:
        """Latest version of *path*, 0 if untracked."""
        return max((r.version for r in self._records if r.path == path), default=0)

    def filter(self, path: str = "") -> list[VersionRecord]:
        """Records for *path* in log order; all records if *path* is empty."""
        if not path:
            return list(self._records)
        return [r for r in self._records if r.path == path]

    def display_order(self, path: str = "") -> list[VersionRecord]:
        """Records sorted ascending by path and descending by version."""
        records = sorted(self.filter(path), key=lambda r: r.version, reverse=True)
        return sorted(records, key=lambda r: r.path)

    def find(self, path: str, version: int) -> VersionRecord | None:
        for record in self._records:
            if record.path == path and record.version == version:
                return record
        return None

    def tracked_files(self) -> list[TrackedFile]:
        """Distinct tracked paths with their signatures, sorted by path."""
        signatures: dict[str, str] = {}
        for record in self._records:
            signatures.setdefault(record.path, record.path_signature)
        return [
            TrackedFile(path=path, path_signature=signatures[path])
            for path in sorted(signatures)
        ]


# ---------------------------------------------------------------------------
# Tier 2 — Content Store
# ---------------------------------------------------------------------------

class ContentStore:
    """
    Raw version content on local disk.

    Blobs are stored as:  <objects>/<path_signature>-<version>
    Each blob is written once, atomically, and never modified afterwards.
    """

    def __init__(self, objects_dir: Path, width: int = VERSION_WIDTH) -> None:
        self._root = objects_dir
        self._width = width
        self._root.mkdir(mode=0o700, parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def blob_path(self, path_signature: str, version: int) -> Path:
        return self._root / f"{path_signature}-{format_version(version, self._width)}"

    def exists(self, path_signature: str, version: int) -> bool:
        return self.blob_path(path_signature, version).exists()

    def write(self, path_signature: str, version: int, data: bytes) -> Path:
        """Durably store *data* (temp file, fsync, atomic rename)."""
        path = self.blob_path(path_signature, version)
        if path.exists():
            # No log line references it, otherwise the version number would be taken.
            logger.warning("Replacing orphaned blob %s from an interrupted commit", path.name)

        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self._root)
        try:
            with os.fdopen(fd, "wb") as fout:
                fout.write(data)
                fout.flush()
                os.fsync(fout.fileno())
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        _fsync_directory(self._root)
        return path

    def read(self, path_signature: str, version: int) -> bytes:
        return self.blob_path(path_signature, version).read_bytes()

    def extract(self, record: VersionRecord) -> bytes:
        """Read the content of *record* and verify it against its checksum."""
        data = self.read(record.path_signature, record.version)
        actual = content_checksum(data)
        if actual != record.content_checksum:
            raise CorruptionError(record.path, record.version, record.content_checksum, actual)
        return data


# ---------------------------------------------------------------------------
# Version Database — unified façade
# ---------------------------------------------------------------------------

class VersionDatabase:
    """
    Handle over both tiers, constructed once per process.

    Loading the log happens here; a strict load failure propagates as
    :class:`LogLoadError` and the caller decides how fatal it is.
    """

    def __init__(self, config: SfvcConfig) -> None:
        config.ensure_dirs()
        self.config = config
        self.log = VersionLog(config.index_path, config.version_width)
        self.content = ContentStore(config.objects_dir, config.version_width)
        self.log.load(strict=config.strict_load)

    @contextmanager
    def commit_lock(self) -> Iterator[None]:
        """
        Serialize commits across processes when ``lock_commits`` is enabled.

        The log is re-read inside the lock so versions appended by another
        process are taken into account.
        """
        if not self.config.lock_commits:
            yield
            return
        with exclusive_lock(self.config.lock_path, self.config.lock_timeout):
            self.log.reload()
            yield

    def lookup(self, path: str, version: int) -> VersionRecord:
        record = self.log.find(path, version)
        if record is None:
            raise VersionNotFoundError(path, version)
        return record

    def extract(self, path: str, version: int) -> bytes:
        """Checksum-verified content of *version* of *path*."""
        return self.content.extract(self.lookup(path, version))

    def store_version(self, record: VersionRecord, data: bytes) -> None:
        """
        Persist content first, then the log line that points at it.

        Refused after a lenient load that skipped lines: a skipped line may
        hold the latest version, and its blob would be taken for an orphan.
        """
        if self.log.load_errors:
            raise IncompleteLogError(len(self.log.load_errors))
        self.content.write(record.path_signature, record.version, data)
        self.log.append(record)
        logger.info(
            "Stored %s @%s (%d bytes, crc %d)",
            record.path, record.label, len(data), record.content_checksum,
        )
