from __future__ import annotations

import os
import threading
import time

import pytest

from sfvc.core.database import ContentStore, VersionDatabase, VersionLog, exclusive_lock
from sfvc.core.errors import (
    CorruptionError,
    IncompleteLogError,
    LockTimeoutError,
    LogLoadError,
    VersionNotFoundError,
)
from sfvc.core.models import SfvcConfig, VersionRecord, content_checksum, path_signature


def record_for(path: str, version: int, data: bytes, based_on: int = 0, msg: str = "") -> VersionRecord:
    return VersionRecord(
        path=path,
        version=version,
        based_on=based_on,
        path_signature=path_signature(path),
        content_checksum=content_checksum(data),
        description=msg,
    )


# -- VersionLog --------------------------------------------------------------

def test_load_creates_missing_log(tmp_path):
    log = VersionLog(tmp_path / "store" / "index")
    assert log.load() == []
    assert (tmp_path / "store" / "index").exists()
    assert len(log) == 0


def test_append_then_reload(tmp_path):
    log = VersionLog(tmp_path / "index")
    log.load()
    a1 = record_for("/a", 1, b"1")
    b1 = record_for("/b", 1, b"x")
    a2 = record_for("/a", 2, b"2", based_on=1, msg="second")
    for r in (a1, b1, a2):
        log.append(r)

    fresh = VersionLog(tmp_path / "index")
    assert fresh.load() == [a1, b1, a2]
    assert fresh.current_version("/a") == 2
    assert fresh.current_version("/b") == 1
    assert fresh.current_version("/missing") == 0


def test_filter_and_display_order(tmp_path):
    log = VersionLog(tmp_path / "index")
    log.load()
    records = [
        record_for("/b", 1, b""),
        record_for("/a", 1, b""),
        record_for("/b", 2, b""),
        record_for("/a", 2, b""),
    ]
    for r in records:
        log.append(r)

    assert log.filter("/b") == [records[0], records[2]]
    assert log.filter("") == records
    assert [(r.path, r.version) for r in log.display_order()] == [
        ("/a", 2), ("/a", 1), ("/b", 2), ("/b", 1),
    ]
    assert [r.version for r in log.display_order("/a")] == [2, 1]


def test_tracked_files(tmp_path):
    log = VersionLog(tmp_path / "index")
    log.load()
    for r in (record_for("/z", 1, b""), record_for("/a", 1, b""), record_for("/z", 2, b"")):
        log.append(r)
    tracked = log.tracked_files()
    assert [t.path for t in tracked] == ["/a", "/z"]
    assert tracked[1].path_signature == path_signature("/z")


def test_malformed_line_aborts_strict_load(tmp_path):
    index = tmp_path / "index"
    good = record_for("/a", 1, b"1").serialize()
    index.write_text(f"{good}\nnot a record\n{good}\n", encoding="utf-8")

    log = VersionLog(index)
    with pytest.raises(LogLoadError) as info:
        log.load()
    assert info.value.line_number == 2
    assert info.value.line == "not a record"
    assert "7 fields" in info.value.reason
    assert len(log) == 0


def test_lenient_load_skips_and_reports(tmp_path):
    index = tmp_path / "index"
    good = record_for("/a", 1, b"1").serialize()
    index.write_text(f"{good}\n\ngarbage\n", encoding="utf-8")

    log = VersionLog(index)
    records = log.load(strict=False)
    assert len(records) == 1
    assert [e.line_number for e in log.load_errors] == [3]


# -- ContentStore ------------------------------------------------------------

def test_blob_naming(tmp_path):
    store = ContentStore(tmp_path / "objects")
    assert store.blob_path("abc", 7).name == "abc-0007"


def test_write_read_extract(tmp_path):
    store = ContentStore(tmp_path / "objects")
    data = b"\x00binary\xffcontent"
    rec = record_for("/a", 1, data)
    store.write(rec.path_signature, 1, data)
    assert store.exists(rec.path_signature, 1)
    assert store.read(rec.path_signature, 1) == data
    assert store.extract(rec) == data
    assert not [p for p in store.root.iterdir() if p.name.endswith(".tmp")]


def test_extract_detects_corruption(tmp_path):
    store = ContentStore(tmp_path / "objects")
    rec = record_for("/a", 1, b"original")
    store.write(rec.path_signature, 1, b"original")
    store.blob_path(rec.path_signature, 1).write_bytes(b"tampered")
    with pytest.raises(CorruptionError) as info:
        store.extract(rec)
    assert info.value.expected == content_checksum(b"original")
    assert info.value.actual == content_checksum(b"tampered")


def test_orphan_blob_is_replaced(tmp_path):
    store = ContentStore(tmp_path / "objects")
    store.write("sig", 1, b"left behind")
    store.write("sig", 1, b"committed")
    assert store.read("sig", 1) == b"committed"


# -- VersionDatabase ---------------------------------------------------------

def test_database_extract_and_not_found(config):
    db = VersionDatabase(config)
    rec = record_for("/a", 1, b"payload")
    db.store_version(rec, b"payload")
    assert db.extract("/a", 1) == b"payload"
    with pytest.raises(VersionNotFoundError):
        db.extract("/a", 2)
    with pytest.raises(VersionNotFoundError):
        db.extract("/b", 1)


def test_database_strict_load_failure(config):
    config.ensure_dirs()
    config.index_path.write_text("broken\n", encoding="utf-8")
    with pytest.raises(LogLoadError):
        VersionDatabase(config)
    lenient = VersionDatabase(config.model_copy(update={"strict_load": False}))
    assert len(lenient.log) == 0
    assert len(lenient.log.load_errors) == 1


def test_commit_lock_rereads_log(config):
    first = VersionDatabase(config)
    second = VersionDatabase(config)
    first.store_version(record_for("/a", 1, b"1"), b"1")

    assert second.log.current_version("/a") == 0
    with second.commit_lock():
        assert second.log.current_version("/a") == 1
    assert not config.lock_path.exists()


def test_commit_lock_disabled_keeps_memory(config):
    unlocked = config.model_copy(update={"lock_commits": False})
    first = VersionDatabase(unlocked)
    second = VersionDatabase(unlocked)
    first.store_version(record_for("/a", 1, b"1"), b"1")
    with second.commit_lock():
        assert second.log.current_version("/a") == 0


def test_exclusive_lock_times_out(tmp_path):
    lock = tmp_path / "index.lock"
    with exclusive_lock(lock, timeout=1.0):
        with pytest.raises(LockTimeoutError):
            with exclusive_lock(lock, timeout=0.1):
                pass
    assert not lock.exists()


def test_exclusive_lock_waits_for_release(tmp_path):
    lock = tmp_path / "index.lock"
    acquired = threading.Event()
    release = threading.Event()

    def holder():
        with exclusive_lock(lock, timeout=1.0):
            acquired.set()
            release.wait(2.0)

    t = threading.Thread(target=holder)
    t.start()
    acquired.wait(2.0)
    threading.Timer(0.1, release.set).start()
    start = time.monotonic()
    with exclusive_lock(lock, timeout=2.0):
        assert time.monotonic() - start > 0.05
    t.join()


def test_lock_from_dead_process_is_recovered(tmp_path):
    lock = tmp_path / "index.lock"
    lock.write_text("99999999\n")           # above the Linux pid_max ceiling
    with exclusive_lock(lock, timeout=0.2):
        assert lock.read_text().strip() == str(os.getpid())
    assert not lock.exists()


def test_lock_from_live_process_is_respected(tmp_path):
    lock = tmp_path / "index.lock"
    lock.write_text(f"{os.getppid()}\n")
    with pytest.raises(LockTimeoutError):
        with exclusive_lock(lock, timeout=0.1):
            pass
    assert lock.exists()


def test_commit_lock_recovers_after_killed_writer(config):
    config.ensure_dirs()
    config.lock_path.write_text("99999999\n")
    db = VersionDatabase(config)
    with db.commit_lock():
        db.store_version(record_for("/a", 1, b"1"), b"1")
    assert db.extract("/a", 1) == b"1"
    assert not config.lock_path.exists()


# -- Lenient loads -----------------------------------------------------------

def test_store_refused_after_skipped_lines(config, store_snapshot):
    db = VersionDatabase(config)
    db.store_version(record_for("/a", 1, b"one"), b"one")
    db.store_version(record_for("/a", 2, b"two", based_on=1), b"two")

    # Damage the latest record so a lenient load no longer sees version 2.
    lines = config.index_path.read_text(encoding="utf-8").splitlines()
    fields = lines[1].split("\t")
    fields[6] = '"unterminated'
    lines[1] = "\t".join(fields)
    config.index_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    before = store_snapshot()

    lenient = VersionDatabase(config.model_copy(update={"strict_load": False}))
    assert lenient.log.current_version("/a") == 1
    with pytest.raises(IncompleteLogError, match="1 malformed"):
        with lenient.commit_lock():
            lenient.store_version(record_for("/a", 2, b"clobber", based_on=1), b"clobber")

    assert store_snapshot() == before
    assert lenient.content.read(path_signature("/a"), 2) == b"two"
    assert not config.lock_path.exists()


def test_lenient_load_of_clean_log_still_commits(config):
    lenient = VersionDatabase(config.model_copy(update={"strict_load": False}))
    lenient.store_version(record_for("/a", 1, b"1"), b"1")
    assert lenient.extract("/a", 1) == b"1"
