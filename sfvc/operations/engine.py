"""
sfvc.operations.engine — The SFVC operations (commit, extract, list, tree, diff).

The engine owns a loaded ``VersionDatabase`` and is the only place where new
VersionRecords are created.  Every path handed in is made absolute first,
since the absolute path string is a file's identity.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from sfvc.core.database import VersionDatabase
from sfvc.core.errors import InvalidBaseError, UnsupportedPathError, VersionNotFoundError
from sfvc.core.models import (
    SfvcConfig,
    TrackedFile,
    VersionRecord,
    content_checksum,
    format_version,
    path_signature,
)
from sfvc.core.tree import VersionTree
from sfvc.operations.diff import unified_diff

logger = logging.getLogger("sfvc.operations")


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Absolute form of *path*; the result is the file's identity key."""
    text = os.path.abspath(os.fspath(path))
    if any(c in text for c in "\t\r\n"):
        raise UnsupportedPathError(text)
    return text


class SfvcEngine:
    """
    Stateful engine over a loaded version database.

    Queries are answered from the in-memory log; ``commit`` is the only
    operation with durable side effects.
    """

    def __init__(self, config: SfvcConfig, db: VersionDatabase) -> None:
        self.config = config
        self.db = db

    @classmethod
    def open(cls, config: SfvcConfig) -> "SfvcEngine":
        return cls(config, VersionDatabase(config))

    # -- Queries -----------------------------------------------------------

    def current_version(self, path: str | os.PathLike[str]) -> int:
        return self.db.log.current_version(normalize_path(path))

    def history(self, path: str | os.PathLike[str] | None = None) -> list[VersionRecord]:
        """Records for *path* (or every path), newest version first per path."""
        return self.db.log.display_order(normalize_path(path) if path else "")

    def list_tracked(self) -> list[TrackedFile]:
        return self.db.log.tracked_files()

    def tree(self, path: str | os.PathLike[str] | None = None, strict: bool = False) -> VersionTree:
        """Version forest of *path*, or of every tracked path."""
        records = self.db.log.filter(normalize_path(path) if path else "")
        return VersionTree.build(records, strict=strict)

    # ======================================================================
    # COMMIT
    # ======================================================================

    def commit(
        self,
        path: str | os.PathLike[str],
        based_on: int = 0,
        message: str = "",
    ) -> VersionRecord:
        """
        Record the current content of *path* as its next version.

        *based_on* names the parent version (0 for none) and must already
        exist.  Invalid bases are rejected before anything is written.
        """
        abs_path = normalize_path(path)
        data = Path(abs_path).read_bytes()

        with self.db.commit_lock():
            current = self.db.log.current_version(abs_path)
            if based_on < 0 or based_on > current:
                raise InvalidBaseError(abs_path, based_on, current)

            record = VersionRecord(
                path=abs_path,
                version=current + 1,
                based_on=based_on,
                path_signature=path_signature(abs_path),
                content_checksum=content_checksum(data),
                description=message,
            )
            self.db.store_version(record, data)

        logger.info(
            "COMMIT %s @%s based on %s: %s",
            abs_path, record.label, format_version(based_on), message[:60],
        )
        return record

    # ======================================================================
    # EXTRACT
    # ======================================================================

    def extract(self, path: str | os.PathLike[str], version: int) -> bytes:
        """Content of *version* of *path*, verified against its checksum."""
        return self.db.extract(normalize_path(path), version)

    # ======================================================================
    # DIFF
    # ======================================================================

    def _load(self, path: str, version: int) -> tuple[str, bytes]:
        if version < 0:
            raise VersionNotFoundError(path, version)
        if version == 0:
            return path, Path(path).read_bytes()
        label = f"{path} @{format_version(version, self.config.version_width)}"
        return label, self.db.extract(path, version)

    def diff(
        self,
        path: str | os.PathLike[str],
        from_version: int = 0,
        to_version: int = 0,
    ) -> bytes:
        """
        Unified diff between two versions of *path*.

        Version 0 stands for the file as it currently is on disk.
        """
        abs_path = normalize_path(path)
        label_from, from_data = self._load(abs_path, from_version)
        label_to, to_data = self._load(abs_path, to_version)
        return unified_diff(
            from_data, to_data, label_from, label_to, command=self.config.diff_command
        )
