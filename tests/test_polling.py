"""Tests for querycache.polling and cache-level polling behaviour."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from querycache.polling import IntervalPoller


# ── IntervalPoller ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_poller_uses_minimum_interval():
    poller = IntervalPoller(AsyncMock(), name="k")

    poller.add(10_000)
    assert poller.active_interval_ms == 10_000
    poller.add(5_000)
    assert poller.active_interval_ms == 5_000

    poller.remove(5_000)
    assert poller.active_interval_ms == 10_000

    poller.remove(10_000)
    assert poller.active_interval_ms is None
    assert not poller.running


@pytest.mark.asyncio
async def test_poller_ref_counts_identical_intervals():
    poller = IntervalPoller(AsyncMock(), name="k")
    poller.add(1_000)
    poller.add(1_000)

    poller.remove(1_000)

    assert poller.counts == {1_000: 1}
    assert poller.active_interval_ms == 1_000
    poller.reset()
    assert poller.counts == {}
    assert not poller.running


@pytest.mark.asyncio
async def test_poller_keeps_timer_when_minimum_unchanged():
    poller = IntervalPoller(AsyncMock(), name="k")
    poller.add(1_000)
    task = poller._task

    poller.add(2_000)
    poller.remove(2_000)

    assert poller._task is task
    poller.reset()


@pytest.mark.asyncio
async def test_poller_remove_unknown_interval_is_noop():
    poller = IntervalPoller(AsyncMock(), name="k")
    poller.remove(500)
    assert poller.counts == {}
    assert poller.active_interval_ms is None


def test_poller_rejects_non_positive_interval():
    poller = IntervalPoller(AsyncMock(), name="k")
    with pytest.raises(ValueError):
        poller.add(0)


@pytest.mark.asyncio
async def test_poller_ticks_repeatedly():
    tick = AsyncMock()
    poller = IntervalPoller(tick, name="k")
    poller.add(20)

    await asyncio.sleep(0.11)
    poller.reset()

    assert tick.await_count >= 3


@pytest.mark.asyncio
async def test_poller_logs_failed_tick(caplog):
    tick = AsyncMock(side_effect=RuntimeError("tick failed"))
    poller = IntervalPoller(tick, name="k")

    with caplog.at_level(logging.WARNING, logger="querycache.polling"):
        poller.add(20)
        await asyncio.sleep(0.05)
        poller.reset()

    assert any("tick failed" in r.getMessage() for r in caplog.records)


# ── Cache-level polling ────────────────────────────────────────
@pytest.mark.asyncio
async def test_active_interval_is_minimum_of_subscribers(cache):
    cache.subscribe("k", lambda: None, poll_interval_ms=10_000)
    unsubscribe_b = cache.subscribe("k", lambda: None, poll_interval_ms=5_000)
    assert cache.active_poll_interval("k") == 5_000

    unsubscribe_b()

    assert cache.active_poll_interval("k") == 10_000


@pytest.mark.asyncio
async def test_poll_rate_follows_minimum_after_unsubscribe(cache):
    calls = []

    async def produce(token):
        calls.append(1)
        return len(calls)

    cache.subscribe("k", lambda: None, poll_interval_ms=40)
    unsubscribe_b = cache.subscribe("k", lambda: None, poll_interval_ms=20)
    cache.register_producer("k", produce)

    await asyncio.sleep(0.3)
    fast = len(calls)

    unsubscribe_b()
    calls.clear()
    await asyncio.sleep(0.3)
    slow = len(calls)

    assert cache.active_poll_interval("k") == 40
    assert fast >= 10
    assert 3 <= slow <= 8
    assert slow < fast


@pytest.mark.asyncio
async def test_poll_forces_refetch_with_registered_producer(cache):
    calls = []

    async def produce(token):
        calls.append(1)
        return len(calls)

    cache.subscribe("k", lambda: None, poll_interval_ms=20)
    await cache.fetch("k", produce, stale_time_ms=60_000)

    await asyncio.sleep(0.11)

    assert len(calls) >= 3
    assert cache.get_snapshot("k").data >= 2


@pytest.mark.asyncio
async def test_poll_ticks_join_slow_fetch(cache):
    calls = []

    async def slow(token):
        calls.append(1)
        await asyncio.sleep(0.15)
        return "v"

    cache.subscribe("k", lambda: None, poll_interval_ms=20)
    task = asyncio.create_task(cache.fetch("k", slow))

    await asyncio.sleep(0.1)
    assert len(calls) == 1
    assert await task == "v"


@pytest.mark.asyncio
async def test_poll_without_producer_does_nothing(cache):
    cache.subscribe("k", lambda: None, poll_interval_ms=20)
    await asyncio.sleep(0.05)
    assert cache.get_snapshot("k").status == "idle"


@pytest.mark.asyncio
async def test_failed_poll_is_recorded_not_raised(cache, caplog):
    async def failing(token):
        raise ConnectionError("rpc unreachable")

    cache.subscribe("k", lambda: None, poll_interval_ms=20)
    cache.register_producer("k", failing)

    with caplog.at_level(logging.WARNING):
        await asyncio.sleep(0.05)

    assert cache.get_snapshot("k").status == "error"
    assert any("rpc unreachable" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_add_poll_interval_requires_subscriber(cache):
    with pytest.raises(RuntimeError):
        cache.add_poll_interval("k", 1_000)

    cache.subscribe("k", lambda: None)
    cache.add_poll_interval("k", 1_000)
    assert cache.active_poll_interval("k") == 1_000
    cache.remove_poll_interval("k", 1_000)
    assert cache.active_poll_interval("k") is None
