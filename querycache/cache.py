"""
Shared, deduplicated, observable async-value cache.

Entry lifecycle
---------------
- Created lazily by the first ``subscribe`` or ``fetch`` for a key.
- Lives while it has at least one subscriber.
- When the last subscriber leaves, the in-flight call is cancelled, polling
  stops and a GC timer is armed for the entry's ``cache_time_ms``.
- A new subscriber disarms the timer; otherwise the entry is deleted.

At most one producer call is in flight per key. Concurrent ``fetch`` calls
join it through ``asyncio.shield`` so that cancelling one waiting caller
never cancels the shared call.

All bookkeeping runs synchronously between suspension points on the event
loop, so no locks are needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Iterator

from querycache.cancellation import CancellationToken
from querycache.logging_config import query_key_ctx
from querycache.models import IDLE_SNAPSHOT, Snapshot, same_snapshot
from querycache.polling import IntervalPoller
from querycache.settings import settings

logger = logging.getLogger("querycache.cache")

Producer = Callable[[CancellationToken], Awaitable[Any]]


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass(eq=False)
class CacheEntry:
    """Mutable record for one key. Owned by :class:`QueryCache`."""

    key: str
    cache_time_ms: int
    snapshot: Snapshot = field(default_factory=lambda: IDLE_SNAPSHOT)
    subscribers: set[Callable[[], None]] = field(default_factory=set)
    task: asyncio.Task | None = None
    token: CancellationToken | None = None
    gc_handle: asyncio.TimerHandle | None = None
    producer: Producer | None = None
    poller: IntervalPoller | None = None
    last_updated_at: float | None = None


def _consume_result(task: asyncio.Task) -> None:
    # Joined callers may all have gone away; the outcome is on the snapshot.
    if not task.cancelled():
        task.exception()


class QueryCache:
    """Process- or session-wide registry of key → :class:`CacheEntry`."""

    def __init__(
        self,
        *,
        default_cache_time_ms: int | None = None,
        default_stale_time_ms: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self.default_cache_time_ms = (
            default_cache_time_ms
            if default_cache_time_ms is not None
            else settings.cache_time_ms
        )
        self.default_stale_time_ms = (
            default_stale_time_ms
            if default_stale_time_ms is not None
            else settings.stale_time_ms
        )
        self._clock = clock or _wall_clock_ms

    # ── Store ──────────────────────────────────────────────────
    def _get_or_create(self, key: str) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        entry = CacheEntry(key=key, cache_time_ms=self.default_cache_time_ms)
        entry.poller = IntervalPoller(partial(self._poll, entry), name=key)
        self._entries[key] = entry
        logger.debug("Created entry %s", key)
        return entry

    def _collect(self, entry: CacheEntry) -> None:
        entry.gc_handle = None
        if entry.subscribers or self._entries.get(entry.key) is not entry:
            return
        del self._entries[entry.key]
        logger.debug("Collected entry %s", entry.key)

    def now(self) -> float:
        """Current time in epoch milliseconds, from the injected clock."""
        return self._clock()

    def _entry_now(self, entry: CacheEntry) -> float:
        # Never earlier than the entry's last commit, even if the clock steps back
        now = self._clock()
        if entry.last_updated_at is not None:
            now = max(now, entry.last_updated_at)
        return now

    def is_stale(self, key: str, stale_time_ms: int | None = None) -> bool:
        """True when ``key`` has no data younger than ``stale_time_ms``."""
        if stale_time_ms is None:
            stale_time_ms = self.default_stale_time_ms
        entry = self._entries.get(key)
        if entry is None:
            return True
        snap = entry.snapshot
        if snap.updated_at is None:
            return True
        return self._entry_now(entry) - snap.updated_at >= stale_time_ms

    def register_producer(self, key: str, producer: Producer) -> None:
        """Set the producer background fetches of ``key`` will use."""
        self._get_or_create(key).producer = producer

    def get_snapshot(self, key: str) -> Snapshot:
        """Current snapshot for ``key``; never creates an entry."""
        entry = self._entries.get(key)
        return entry.snapshot if entry is not None else IDLE_SNAPSHOT

    def keys(self) -> list[str]:
        return list(self._entries)

    def subscriber_count(self, key: str) -> int:
        entry = self._entries.get(key)
        return len(entry.subscribers) if entry is not None else 0

    def active_poll_interval(self, key: str) -> int | None:
        entry = self._entries.get(key)
        return entry.poller.active_interval_ms if entry is not None else None

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    # ── Notification ───────────────────────────────────────────
    def _set_snapshot(self, entry: CacheEntry, nxt: Snapshot) -> None:
        if same_snapshot(entry.snapshot, nxt):
            return
        entry.snapshot = nxt
        for cb in list(entry.subscribers):
            try:
                cb()
            except Exception:
                logger.exception("Subscriber callback for %s failed", entry.key)

    # ── Fetch coordination ─────────────────────────────────────
    async def fetch(
        self,
        key: str,
        producer: Producer,
        *,
        stale_time_ms: int | None = None,
        force: bool = False,
        signal: CancellationToken | None = None,
    ) -> Any:
        """Return the value for ``key``, calling ``producer`` at most once
        per key at a time.

        Fresh data (younger than ``stale_time_ms``) is returned without a
        call unless ``force`` is set. An in-flight call is always joined.
        A cancelled call resolves with the previous data instead of raising.
        """
        entry = self._get_or_create(key)
        entry.producer = producer

        snap = entry.snapshot
        if (
            not force
            and snap.status == "success"
            and snap.has_data
            and not self.is_stale(key, stale_time_ms)
        ):
            logger.debug("Fresh hit for %s", key)
            return snap.data

        if entry.task is not None:
            logger.debug("Joining in-flight fetch for %s", key)
            return await asyncio.shield(entry.task)

        token = CancellationToken()
        if signal is not None:
            token.link(signal)

        task = asyncio.get_running_loop().create_task(
            self._execute(entry, producer, token), name=f"query:{key}"
        )
        task.add_done_callback(_consume_result)
        # Published before notifying: a re-entrant fetch must join this call
        entry.task = task
        entry.token = token

        first_load = snap.status == "idle" and snap.updated_at is None
        self._set_snapshot(
            entry,
            snap.model_copy(
                update={
                    "status": "loading" if first_load else snap.status,
                    "is_fetching": True,
                    "error": None,
                }
            ),
        )
        logger.debug("Fetching %s (force=%s)", key, force)
        return await asyncio.shield(task)

    async def _execute(
        self, entry: CacheEntry, producer: Producer, token: CancellationToken
    ) -> Any:
        query_key_ctx.set(entry.key)
        call = asyncio.current_task()
        work: asyncio.Future | None = None
        try:
            work = asyncio.ensure_future(producer(token))
            token.add_callback(work.cancel)
            data = await work
        except asyncio.CancelledError:
            if not token.cancelled:
                # This call task itself was cancelled, e.g. loop teardown
                self._settle_aborted(entry, call)
                raise
            return self._settle_aborted(entry, call)
        except Exception as exc:
            if token.cancelled:
                return self._settle_aborted(entry, call)
            if self._settle_failed(entry, call, exc):
                raise
            return entry.snapshot.data
        finally:
            if work is not None:
                token.remove_callback(work.cancel)
            cancelled = token.cancelled
            token.unlink()

        if cancelled:
            # Producer ignored its token; the late result is discarded
            return self._settle_aborted(entry, call)
        return self._settle_succeeded(entry, call, data)

    def _is_current(self, entry: CacheEntry, call: asyncio.Task | None) -> bool:
        return entry.task is call and self._entries.get(entry.key) is entry

    @staticmethod
    def _release(entry: CacheEntry) -> None:
        entry.task = None
        entry.token = None

    def _settle_succeeded(
        self, entry: CacheEntry, call: asyncio.Task | None, data: Any
    ) -> Any:
        if not self._is_current(entry, call):
            logger.debug("Discarding superseded result for %s", entry.key)
            return entry.snapshot.data
        self._release(entry)

        now = self._entry_now(entry)
        entry.last_updated_at = now
        self._set_snapshot(
            entry,
            Snapshot(
                data=data,
                error=None,
                status="success",
                updated_at=now,
                is_fetching=False,
            ),
        )
        return data

    def _settle_failed(
        self, entry: CacheEntry, call: asyncio.Task | None, exc: Exception
    ) -> bool:
        if not self._is_current(entry, call):
            logger.debug("Discarding superseded failure for %s: %s", entry.key, exc)
            return False
        self._release(entry)

        logger.warning("Fetch for %s failed: %s", entry.key, exc)
        self._set_snapshot(
            entry,
            entry.snapshot.model_copy(
                update={"error": exc, "status": "error", "is_fetching": False}
            ),
        )
        return True

    def _settle_aborted(self, entry: CacheEntry, call: asyncio.Task | None) -> Any:
        if self._is_current(entry, call):
            self._release(entry)
            self._apply_aborted(entry)
        return entry.snapshot.data

    def _apply_aborted(self, entry: CacheEntry) -> None:
        snap = entry.snapshot
        logger.debug("Fetch for %s was cancelled", entry.key)
        self._set_snapshot(
            entry,
            snap.model_copy(
                update={
                    # An aborted first load goes back to idle
                    "status": "idle" if snap.status == "loading" else snap.status,
                    "error": None,
                    "is_fetching": False,
                }
            ),
        )

    def _cancel_in_flight(self, entry: CacheEntry) -> None:
        token = entry.token
        self._release(entry)
        if token is not None:
            token.cancel()
            self._apply_aborted(entry)

    def abort(self, key: str) -> None:
        """Cancel the in-flight call for ``key`` without unsubscribing anyone."""
        entry = self._entries.get(key)
        if entry is not None and entry.token is not None:
            logger.debug("Aborting fetch for %s", key)
            entry.token.cancel()

    # ── Subscriptions ──────────────────────────────────────────
    def subscribe(
        self,
        key: str,
        on_change: Callable[[], None],
        cache_time_ms: int | None = None,
        *,
        poll_interval_ms: int | None = None,
    ) -> Callable[[], None]:
        """Observe ``key``; returns the matching ``unsubscribe`` function.

        ``cache_time_ms`` can only raise the entry's GC delay. An optional
        ``poll_interval_ms`` is held for as long as the subscription lives.
        """
        entry = self._get_or_create(key)
        entry.subscribers.add(on_change)

        if cache_time_ms is not None:
            entry.cache_time_ms = max(entry.cache_time_ms, cache_time_ms)

        if entry.gc_handle is not None:
            entry.gc_handle.cancel()
            entry.gc_handle = None
            logger.debug("Rescued %s from GC", key)

        if poll_interval_ms is not None:
            entry.poller.add(poll_interval_ms)

        active = True

        def unsubscribe() -> None:
            nonlocal active
            if not active:
                return
            active = False

            if poll_interval_ms is not None:
                entry.poller.remove(poll_interval_ms)
            entry.subscribers.discard(on_change)
            if entry.subscribers or self._entries.get(key) is not entry:
                return

            # Nobody is watching: stop background work, arm GC
            self._cancel_in_flight(entry)
            entry.poller.reset()
            entry.gc_handle = asyncio.get_running_loop().call_later(
                entry.cache_time_ms / 1000, self._collect, entry
            )
            logger.debug("Scheduled GC for %s in %d ms", key, entry.cache_time_ms)

        return unsubscribe

    # ── Polling ────────────────────────────────────────────────
    def add_poll_interval(self, key: str, interval_ms: int) -> None:
        entry = self._entries.get(key)
        if entry is None or not entry.subscribers:
            raise RuntimeError(f"Cannot poll {key!r} without subscribers")
        entry.poller.add(interval_ms)

    def remove_poll_interval(self, key: str, interval_ms: int) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.poller.remove(interval_ms)

    async def _poll(self, entry: CacheEntry) -> None:
        if self._entries.get(entry.key) is not entry or entry.producer is None:
            return
        await self.fetch(entry.key, entry.producer, force=True)

    # ── Invalidation ───────────────────────────────────────────
    def invalidate(self, key: str) -> None:
        """Mark ``key`` stale. Lazy: no fetch, no notification."""
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.snapshot = entry.snapshot.model_copy(update={"updated_at": None})

    def clear(self) -> None:
        """Drop every entry, cancelling all background work silently."""
        for entry in self._entries.values():
            token = entry.token
            self._release(entry)
            if token is not None:
                token.cancel()
            entry.poller.reset()
            if entry.gc_handle is not None:
                entry.gc_handle.cancel()
                entry.gc_handle = None
        count = len(self._entries)
        self._entries.clear()
        logger.info("Cleared %d cache entries", count)


# ── Default instance ───────────────────────────────────────────
class _State:
    """Mutable container for the process-wide cache."""
    cache: QueryCache | None = None


state = _State()


def get_query_cache() -> QueryCache:
    """Return the process-wide cache, creating it on first use."""
    if state.cache is None:
        state.cache = QueryCache()
    return state.cache


def reset_query_cache() -> QueryCache:
    """Clear the process-wide cache and install a fresh instance."""
    if state.cache is not None:
        state.cache.clear()
    state.cache = QueryCache()
    return state.cache
