"""
Single-File Version Control (SFVC) — keep versions of one file at a time.

No repositories, no working trees: every file is identified by its absolute
path, and each commit records one new version of it in a shared store.
"""

from pathlib import Path
import tomllib
from importlib.metadata import version, PackageNotFoundError

def _resolve_version() -> str:
    """Resolve SFVC version.

    Priority:
    1) Local source checkout version from pyproject.toml (if present)
    2) Installed package metadata (sfvc)
    3) Safe fallback
    """
    root = Path(__file__).resolve().parent.parent
    pyproject = root / "pyproject.toml"
    if pyproject.exists():
        try:
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            data = {}
        proj = data.get("project", {})
        if proj.get("name") == "sfvc":
            ver = proj.get("version")
            if isinstance(ver, str) and ver.strip():
                return ver.strip()

    try:
        return version("sfvc")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _resolve_version()
