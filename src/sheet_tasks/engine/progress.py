"""Throttled progress persistence."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def update_progress(self, *, task_id: str, percentage: int) -> bool: ...


class ProgressTracker:
    """Writes `rows_done * 100 // rows_total` at most once per N rows or T seconds.

    Values below the last written one are never sent; the repository guards the
    same invariant with a conditional update. An unchanged value is still written
    when due, which keeps the task record fresh for the stale-task sweep.
    """

    def __init__(
        self,
        sink: ProgressSink,
        *,
        every_rows: int = 10,
        interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if every_rows <= 0:
            raise ValueError("every_rows must be a positive integer")
        self._sink = sink
        self._every_rows = every_rows
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._written: dict[str, int] = {}
        self._pending: dict[str, int] = {}
        self._rows_since_write: dict[str, int] = {}
        self._last_write_at: dict[str, float] = {}

    def start(self, task_id: str) -> None:
        """Start the interval clock for a task; call once when its rows begin."""

        self._last_write_at[task_id] = self._clock()

    def report(self, task_id: str, rows_done: int, rows_total: int) -> None:
        percentage = _percentage(rows_done, rows_total)
        self._pending[task_id] = max(percentage, self._pending.get(task_id, 0))
        self._rows_since_write[task_id] = self._rows_since_write.get(task_id, 0) + 1

        now = self._clock()
        last = self._last_write_at.setdefault(task_id, now)
        if (
            self._rows_since_write[task_id] >= self._every_rows
            or now - last >= self._interval_seconds
        ):
            self._write(task_id, now)

    def flush(self, task_id: str) -> None:
        """Force the pending value, if any, to storage."""

        if task_id in self._pending:
            self._write(task_id, self._clock())

    def forget(self, task_id: str) -> None:
        for state in (self._written, self._pending, self._rows_since_write, self._last_write_at):
            state.pop(task_id, None)

    def last_written(self, task_id: str) -> int | None:
        return self._written.get(task_id)

    def _write(self, task_id: str, now: float) -> None:
        percentage = self._pending.pop(task_id)
        self._rows_since_write[task_id] = 0
        self._last_write_at[task_id] = now
        if percentage < self._written.get(task_id, -1):
            return
        if self._sink.update_progress(task_id=task_id, percentage=percentage):
            self._written[task_id] = percentage
            logger.debug("Task %s progress %d%%", task_id, percentage)


def _percentage(rows_done: int, rows_total: int) -> int:
    if rows_total <= 0:
        return 0
    return max(0, min(100, rows_done * 100 // rows_total))
