"""
Query observers.

A ``QueryObserver`` watches one key the way a UI component would: it
subscribes, decides whether to fetch on start, holds a polling interval
while it is active, and hands every new snapshot to its ``on_change``
callback.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from querycache.cache import Producer, QueryCache
from querycache.cancellation import CancellationToken
from querycache.models import IDLE_SNAPSHOT, ObserverOptions, Snapshot

logger = logging.getLogger("querycache.observer")


class QueryObserver:
    """One observer of one key. ``key=None`` means disabled."""

    def __init__(
        self,
        cache: QueryCache,
        key: str | None,
        producer: Producer,
        options: ObserverOptions | None = None,
        on_change: Callable[[Snapshot], None] | None = None,
    ) -> None:
        self._cache = cache
        self.key = key
        self._producer = producer
        self.options = options or ObserverOptions()
        self._on_change = on_change
        self._unsubscribe: Callable[[], None] | None = None
        self._interval_ms: int | None = None
        self._mount_task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    @property
    def snapshot(self) -> Snapshot:
        if self.key is None:
            return IDLE_SNAPSHOT
        return self._cache.get_snapshot(self.key)

    async def _call_producer(self, token: CancellationToken) -> Any:
        # Always the latest producer, so swapping it never re-subscribes
        return await self._producer(token)

    def set_producer(self, producer: Producer) -> None:
        self._producer = producer

    # ── Lifecycle ──────────────────────────────────────────────
    def start(self) -> asyncio.Task | None:
        """Subscribe and run the mount fetch; returns its task, if any."""
        if self._unsubscribe is not None or self.key is None:
            return None
        self._unsubscribe = self._cache.subscribe(
            self.key, self._notify, self.options.cache_time_ms
        )
        if not self.options.enabled:
            return None
        return self._activate()

    def stop(self) -> None:
        if self._unsubscribe is None:
            return
        self._apply_interval(None)
        if self._mount_task is not None:
            # Only our wait is cancelled; the shared call is shielded
            self._mount_task.cancel()
            self._mount_task = None
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        unsubscribe()

    async def __aenter__(self) -> QueryObserver:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.stop()

    def _activate(self) -> asyncio.Task | None:
        self._cache.register_producer(self.key, self._call_producer)
        self._apply_interval(self.options.refetch_interval_ms)
        return self._mount_fetch()

    def _mount_fetch(self) -> asyncio.Task | None:
        opts = self.options
        snap = self.snapshot
        should_fetch = (
            opts.refetch_on_mount is True
            or snap.status == "idle"
            or (
                opts.refetch_on_mount == "stale"
                and self._cache.is_stale(self.key, opts.stale_time_ms)
            )
        )
        if not should_fetch:
            return None

        task = asyncio.get_running_loop().create_task(
            self._cache.fetch(
                self.key,
                self._call_producer,
                stale_time_ms=opts.stale_time_ms,
                force=opts.refetch_on_mount is True,
            )
        )
        task.add_done_callback(self._mount_done)
        self._mount_task = task
        return task

    def _mount_done(self, task: asyncio.Task) -> None:
        if self._mount_task is task:
            self._mount_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Mount fetch for %s failed: %s", self.key, exc)

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.snapshot)

    # ── Options ────────────────────────────────────────────────
    def set_enabled(self, enabled: bool) -> asyncio.Task | None:
        """Toggle fetching; enabling an active observer runs the mount fetch."""
        was_enabled = self.options.enabled
        self.options = self.options.model_copy(update={"enabled": enabled})
        if not self.active or was_enabled == enabled:
            return None
        if enabled:
            return self._activate()
        self._apply_interval(None)
        return None

    def set_refetch_interval(self, interval_ms: int | None) -> None:
        self.options = ObserverOptions.model_validate(
            {**self.options.model_dump(), "refetch_interval_ms": interval_ms}
        )
        if self.active and self.options.enabled:
            self._apply_interval(interval_ms)

    def _apply_interval(self, interval_ms: int | None) -> None:
        if interval_ms == self._interval_ms:
            return
        if self._interval_ms is not None:
            self._cache.remove_poll_interval(self.key, self._interval_ms)
        self._interval_ms = interval_ms
        if interval_ms is not None:
            self._cache.add_poll_interval(self.key, interval_ms)

    # ── Commands ───────────────────────────────────────────────
    async def refetch(self, signal: CancellationToken | None = None) -> Any:
        if self.key is None:
            return None
        return await self._cache.fetch(
            self.key, self._call_producer, force=True, signal=signal
        )

    def abort(self) -> None:
        if self.key is not None:
            self._cache.abort(self.key)
