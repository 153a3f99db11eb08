"""Live monitor: re-read a sheet whenever its workbook changes on disk."""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from pathlib import Path

from xlmirror.contracts.errors import XlMirrorError
from xlmirror.contracts.results import SheetRow
from xlmirror.engine import store
from xlmirror.observe.logging import get_logger

log = get_logger(__name__)

DEFAULT_INTERVAL = 0.3

Signature = tuple[int, int]


class LiveMonitor:
    """Polls the workbook's (mtime, size) and calls ``on_change`` with fresh rows after a change.

    Read errors go to ``on_error`` and the loop keeps running; a file that is
    being rewritten usually reads fine on the next poll.
    """

    def __init__(
        self,
        path: str | Path,
        sheet: str,
        on_change: Callable[[list[SheetRow]], None],
        *,
        on_error: Callable[[Exception], None] | None = None,
        interval: float = DEFAULT_INTERVAL,
        should_stop: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = Path(path)
        self.sheet = sheet
        self.on_change = on_change
        self.on_error = on_error
        self.interval = interval
        self.should_stop = should_stop or (lambda: False)
        self.sleep = sleep
        self.dirty = True
        self.refreshes = 0
        self._signature: Signature | None = None

    def signature(self) -> Signature | None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def poll_once(self) -> bool:
        """Check for a change and refresh if dirty. Returns True when ``on_change`` ran."""
        current = self.signature()
        if current != self._signature:
            self._signature = current
            self.dirty = True
        if not self.dirty:
            return False
        self.dirty = False
        try:
            rows = store.read_indexed_rows(self.path, self.sheet)
        except XlMirrorError as exc:
            log.warning("monitor.read_failed", file=str(self.path), sheet=self.sheet, error=exc.message)
            if self.on_error is not None:
                self.on_error(exc)
            return False
        self.refreshes += 1
        log.debug("monitor.refreshed", file=str(self.path), sheet=self.sheet, rows=len(rows))
        self.on_change(rows)
        return True

    def run(self) -> int:
        """Poll until ``should_stop()`` or Ctrl+C. Returns the number of refreshes."""
        log.info("monitor.started", file=str(self.path), sheet=self.sheet, interval=self.interval)
        try:
            while not self.should_stop():
                self.poll_once()
                self.sleep(self.interval)
        except KeyboardInterrupt:
            pass
        log.info("monitor.stopped", file=str(self.path), refreshes=self.refreshes)
        return self.refreshes
