"""
Ref-counted polling for one cache entry.

Every observer may request an interval; the entry polls at the shortest
interval any current observer asked for. Counts are a plain
interval → observers map and the minimum is recomputed on each change.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger("querycache.polling")


class IntervalPoller:
    """Runs ``tick`` every ``min(requested intervals)`` milliseconds."""

    def __init__(self, tick: Callable[[], Awaitable[Any]], *, name: str = "") -> None:
        self._tick = tick
        self._name = name
        self._counts: dict[int, int] = {}
        self._task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self.active_interval_ms: int | None = None

    @property
    def counts(self) -> dict[int, int]:
        return dict(self._counts)

    @property
    def running(self) -> bool:
        return self._task is not None

    def min_interval(self) -> int | None:
        active = [ms for ms, count in self._counts.items() if count > 0]
        return min(active) if active else None

    def add(self, interval_ms: int) -> None:
        if interval_ms <= 0:
            raise ValueError(f"Polling interval must be positive, got {interval_ms}")
        self._counts[interval_ms] = self._counts.get(interval_ms, 0) + 1
        self._reschedule()

    def remove(self, interval_ms: int) -> None:
        count = self._counts.get(interval_ms, 0)
        if count <= 1:
            self._counts.pop(interval_ms, None)
        else:
            self._counts[interval_ms] = count - 1
        self._reschedule()

    def reset(self) -> None:
        """Drop every request and stop the timer."""
        self._counts.clear()
        self._stop()

    def _reschedule(self) -> None:
        next_ms = self.min_interval()
        if next_ms is None:
            self._stop()
            return
        if next_ms == self.active_interval_ms and self._task is not None:
            return

        self._stop()
        self.active_interval_ms = next_ms
        self._task = asyncio.get_running_loop().create_task(
            self._run(next_ms), name=f"poll:{self._name}"
        )
        logger.debug("Polling %s every %d ms", self._name, next_ms)

    def _stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None
        self.active_interval_ms = None
        for t in list(self._ticks):
            t.cancel()
        self._ticks.clear()

    async def _run(self, interval_ms: int) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval_ms / 1000)
            # Fixed rate: a slow tick must not delay the next one
            t = loop.create_task(self._tick())
            self._ticks.add(t)
            t.add_done_callback(self._tick_done)

    def _tick_done(self, t: asyncio.Task) -> None:
        self._ticks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("Poll tick for %s failed: %s", self._name, exc)
