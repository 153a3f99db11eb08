"""File operations: fingerprinting, backups, atomic write, sidecar locking."""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
import time
from datetime import datetime, timedelta, timezone
from io import TextIOWrapper
from pathlib import Path

import portalocker

LOCK_SUFFIX = ".xlmirror.lock"
BACKUP_STAMP = "%Y%m%dT%H%M%SZ"


def fingerprint(path: str | Path) -> str:
    """SHA-256 of the file contents, prefixed with the algorithm name."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return f"sha256:{h.hexdigest()}"


def backup(path: str | Path) -> str:
    """Copy the workbook to ``<stem>.<UTC stamp>.bak<suffix>`` and return the copy's path."""
    path = Path(path)
    ts = datetime.now(timezone.utc).strftime(BACKUP_STAMP)
    backup_path = path.parent / f"{path.stem}.{ts}.bak{path.suffix}"
    shutil.copy2(path, backup_path)
    return str(backup_path)


def list_backups(path: str | Path) -> list[tuple[datetime, Path]]:
    """Backups of ``path`` next to it, oldest first."""
    path = Path(path)
    pattern = re.compile(
        re.escape(path.stem) + r"\.(\d{8}T\d{6}Z)\.bak" + re.escape(path.suffix) + "$"
    )
    found: list[tuple[datetime, Path]] = []
    if not path.parent.is_dir():
        return found
    for candidate in path.parent.iterdir():
        m = pattern.match(candidate.name)
        if not m:
            continue
        stamp = datetime.strptime(m.group(1), BACKUP_STAMP).replace(tzinfo=timezone.utc)
        found.append((stamp, candidate))
    found.sort()
    return found


def prune_backups(
    path: str | Path,
    retention_days: int,
    *,
    now: datetime | None = None,
) -> list[str]:
    """Delete backups of ``path`` older than ``retention_days``. Returns removed paths."""
    if retention_days <= 0:
        return []
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    removed: list[str] = []
    for stamp, candidate in list_backups(path):
        if stamp < cutoff:
            candidate.unlink()
            removed.append(str(candidate))
    return removed


def atomic_write(target: str | Path, data: bytes) -> None:
    """Write data to target atomically via temp file + rename."""
    target = Path(target)
    fd, tmp_path = tempfile.mkstemp(
        dir=target.parent, suffix=target.suffix, prefix=".xlmirror_tmp_"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        shutil.move(tmp_path, target)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def lock_path_for(path: str | Path) -> Path:
    path = Path(path).resolve()
    return path.parent / (path.name + LOCK_SUFFIX)


class WorkbookLock:
    """Exclusive sidecar lock held for one logical mutation of a workbook.

    The ``<file>.xlmirror.lock`` sidecar is locked with portalocker; a second
    writer fails fast (``timeout=0``) or polls until ``timeout`` elapses and
    then raises ``portalocker.LockException``.  A crashed holder leaves a
    stale, unlocked sidecar behind, which the next process simply reuses.
    """

    def __init__(self, workbook_path: str | Path, *, timeout: float = 0) -> None:
        self.workbook_path = Path(workbook_path).resolve()
        self.timeout = timeout
        self._lock_path = lock_path_for(self.workbook_path)
        self._lock_file: TextIOWrapper | None = None

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @staticmethod
    def _try_lock(handle: TextIOWrapper) -> None:
        portalocker.lock(handle, portalocker.LOCK_EX | portalocker.LOCK_NB)

    def __enter__(self) -> "WorkbookLock":
        self._lock_file = handle = open(self._lock_path, "a+")  # noqa: SIM115
        try:
            if self.timeout <= 0:
                self._try_lock(handle)
            else:
                deadline = time.monotonic() + self.timeout
                interval = min(0.1, max(0.01, self.timeout / 20))
                while True:
                    try:
                        self._try_lock(handle)
                        break
                    except portalocker.LockException:
                        if time.monotonic() >= deadline:
                            raise
                        time.sleep(interval)
        except portalocker.LockException:
            handle.close()
            self._lock_file = None
            raise

        # Holder info read back by lock-status
        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()}\n")
        handle.write(f"time={datetime.now(timezone.utc).isoformat()}\n")
        handle.flush()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        if self._lock_file is not None:
            try:
                portalocker.unlock(self._lock_file)
            finally:
                self._lock_file.close()
                self._lock_file = None


def check_lock(path: str | Path) -> dict:
    """Probe the sidecar lock of ``path`` without holding it.

    Returns ``exists`` (workbook present), ``locked``, ``lock_file`` and,
    when locked, the ``holder`` fields written by the current owner.
    """
    path = Path(path).resolve()
    lock_path = lock_path_for(path)
    wb_exists = path.exists()

    if not lock_path.exists():
        return {"exists": wb_exists, "locked": False, "lock_file": str(lock_path)}

    try:
        fd = open(lock_path, "a+")  # noqa: SIM115
        try:
            portalocker.lock(fd, portalocker.LOCK_EX | portalocker.LOCK_NB)
            portalocker.unlock(fd)
        finally:
            fd.close()
        return {"exists": wb_exists, "locked": False, "lock_file": str(lock_path)}
    except portalocker.LockException:
        holder: dict[str, str] = {}
        try:
            for line in lock_path.read_text().strip().splitlines():
                if "=" in line:
                    k, v = line.split("=", 1)
                    holder[k.strip()] = v.strip()
        except OSError:
            pass
        return {"exists": wb_exists, "locked": True, "lock_file": str(lock_path), "holder": holder}
    except OSError:
        return {"exists": wb_exists, "locked": False, "lock_file": str(lock_path), "check_error": True}


def read_text_safe(path: str | Path) -> str:
    """Read a text file, dropping a leading UTF-8 BOM if present."""
    return Path(path).read_text(encoding="utf-8-sig")
