"""Shared fixtures: an injectable clock and an isolated cache per test."""

import pytest
import pytest_asyncio

from querycache.cache import QueryCache


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def cache(clock):
    """Fresh store with a short GC delay so lifecycle tests stay fast."""
    qc = QueryCache(default_cache_time_ms=50, clock=clock)
    yield qc
    qc.clear()
