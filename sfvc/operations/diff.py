"""
sfvc.operations.diff — Unified diff of two byte buffers.

Both buffers are written to temporary files and handed to ``diff -u``.  The
tool's exit status only tells whether the inputs differ, so it is ignored.
When the executable is not installed, ``difflib`` renders the same format.
"""

from __future__ import annotations

import difflib
import logging
import subprocess
import tempfile
from pathlib import Path

logger = logging.getLogger("sfvc.diff")


def _difflib_diff(from_data: bytes, to_data: bytes, label_from: str, label_to: str) -> bytes:
    lines = difflib.diff_bytes(
        difflib.unified_diff,
        from_data.splitlines(keepends=True),
        to_data.splitlines(keepends=True),
        fromfile=label_from.encode(),
        tofile=label_to.encode(),
    )
    return b"".join(lines)


def unified_diff(
    from_data: bytes,
    to_data: bytes,
    label_from: str,
    label_to: str,
    command: str = "diff",
) -> bytes:
    """Return the unified diff of *from_data* → *to_data* as raw bytes."""
    with tempfile.TemporaryDirectory(prefix="sfvc-") as tmp:
        from_path = Path(tmp) / "from"
        to_path = Path(tmp) / "to"
        from_path.write_bytes(from_data)
        to_path.write_bytes(to_data)
        try:
            result = subprocess.run(
                [command, "-u", "--label", label_from, "--label", label_to,
                 str(from_path), str(to_path)],
                capture_output=True,
            )
        except FileNotFoundError:
            logger.warning("%s not found, falling back to difflib", command)
            return _difflib_diff(from_data, to_data, label_from, label_to)

    if result.stderr:
        logger.warning(
            "%s exited with status %d: %s",
            command, result.returncode, result.stderr.decode(errors="replace").strip(),
        )
    return result.stdout
