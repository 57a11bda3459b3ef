from __future__ import annotations

from pathlib import Path

import pytest

from sfvc.core.models import SfvcConfig
from sfvc.operations.engine import SfvcEngine


@pytest.fixture
def config(tmp_path: Path) -> SfvcConfig:
    return SfvcConfig(store_dir=tmp_path / "store", lock_timeout=1.0)


@pytest.fixture
def engine(config: SfvcConfig) -> SfvcEngine:
    return SfvcEngine.open(config)


@pytest.fixture
def work_file(tmp_path: Path) -> Path:
    path = tmp_path / "work" / "deploy.sh"
    path.parent.mkdir()
    path.write_bytes(b"#!/bin/sh\necho deploy\n")
    return path


@pytest.fixture
def store_snapshot(config: SfvcConfig):
    """Log bytes plus every blob in the store, for before/after comparisons."""

    def snapshot() -> tuple[bytes, dict[str, bytes]]:
        blobs = {p.name: p.read_bytes() for p in sorted(config.objects_dir.iterdir())}
        return config.index_path.read_bytes(), blobs

    return snapshot
