"""Tests for file operations: fingerprint, backups, atomic write, locking."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import portalocker
import pytest

from xlmirror.io.fileops import (
    BACKUP_STAMP,
    WorkbookLock,
    atomic_write,
    backup,
    check_lock,
    fingerprint,
    list_backups,
    lock_path_for,
    prune_backups,
    read_text_safe,
)


def test_fingerprint(prepared: Path):
    fp = fingerprint(prepared)
    assert fp.startswith("sha256:")
    assert len(fp) == 71
    assert fingerprint(prepared) == fp


def test_backup(prepared: Path):
    bak_path = backup(prepared)
    assert Path(bak_path).exists()
    assert Path(bak_path).name.startswith("data.")
    assert bak_path.endswith(".bak.xlsx")
    assert Path(bak_path).read_bytes() == prepared.read_bytes()
    assert [p for _, p in list_backups(prepared)] == [Path(bak_path)]


def _fake_backup(path: Path, when: datetime) -> Path:
    copy = path.parent / f"{path.stem}.{when.strftime(BACKUP_STAMP)}.bak{path.suffix}"
    copy.write_bytes(b"old")
    return copy


def test_prune_backups(tmp_path: Path):
    path = tmp_path / "data.xlsx"
    path.write_bytes(b"current")
    now = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)
    old = _fake_backup(path, now - timedelta(days=40))
    recent = _fake_backup(path, now - timedelta(days=3))
    unrelated = tmp_path / "other.20240101T000000Z.bak.xlsx"
    unrelated.write_bytes(b"x")

    assert prune_backups(path, 30, now=now) == [str(old)]
    assert not old.exists()
    assert recent.exists()
    assert unrelated.exists()


def test_prune_disabled_with_zero_retention(tmp_path: Path):
    path = tmp_path / "data.xlsx"
    old = _fake_backup(path, datetime(2000, 1, 1, tzinfo=timezone.utc))
    assert prune_backups(path, 0) == []
    assert old.exists()


def test_atomic_write_overwrites(tmp_path: Path):
    target = tmp_path / "output.xlsx"
    target.write_bytes(b"old content")
    atomic_write(target, b"new content")
    assert target.read_bytes() == b"new content"
    assert [p.name for p in tmp_path.iterdir()] == ["output.xlsx"]


def test_read_text_safe_strips_bom(tmp_path: Path):
    path = tmp_path / "x.yaml"
    path.write_bytes(b"\xef\xbb\xbfkey: value\n")
    assert read_text_safe(path) == "key: value\n"


class TestWorkbookLock:
    def test_sidecar_and_holder_info(self, prepared: Path):
        with WorkbookLock(prepared) as lock:
            assert lock.lock_path == lock_path_for(prepared)
            assert lock.lock_path.name == "data.xlsx.xlmirror.lock"
            status = check_lock(prepared)
            assert status["locked"] is True
            assert status["holder"]["pid"] == str(os.getpid())
        assert check_lock(prepared)["locked"] is False

    def test_second_writer_fails_fast(self, prepared: Path):
        with WorkbookLock(prepared):
            with pytest.raises(portalocker.LockException):
                with WorkbookLock(prepared):
                    pass

    def test_second_writer_waits_for_timeout(self, prepared: Path):
        with WorkbookLock(prepared):
            with pytest.raises(portalocker.LockException):
                with WorkbookLock(prepared, timeout=0.1):
                    pass

    def test_reacquire_after_release(self, prepared: Path):
        with WorkbookLock(prepared):
            pass
        with WorkbookLock(prepared):
            pass

    def test_check_lock_without_sidecar(self, tmp_path: Path):
        status = check_lock(tmp_path / "new.xlsx")
        assert status == {"exists": False, "locked": False, "lock_file": str(lock_path_for(tmp_path / "new.xlsx"))}
