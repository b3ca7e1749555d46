"""
Pydantic models for query snapshots and observer options.

A ``Snapshot`` is replaced, never mutated: every state transition builds a
new frozen instance so observers can detect change by identity.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

QueryStatus = Literal["idle", "loading", "success", "error"]


class Snapshot(BaseModel):
    """Observable state of one cache entry at a point in time."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Any = Field(None, description="Last successfully produced value")
    error: Exception | None = Field(
        None, description="Failure of the most recent committed outcome"
    )
    status: QueryStatus = "idle"
    updated_at: float | None = Field(
        None, description="Epoch milliseconds of the last successful fetch"
    )
    is_fetching: bool = False

    @property
    def has_data(self) -> bool:
        return self.data is not None


IDLE_SNAPSHOT = Snapshot()


def same_snapshot(prev: Snapshot, nxt: Snapshot) -> bool:
    """Return True when ``nxt`` would not change what observers render.

    ``error`` and ``data`` compare by identity, the rest by value.
    """
    return (
        prev.status == nxt.status
        and prev.is_fetching == nxt.is_fetching
        and prev.updated_at == nxt.updated_at
        and prev.error is nxt.error
        and prev.data is nxt.data
    )


class ObserverOptions(BaseModel):
    """Per-observer options for :class:`querycache.observer.QueryObserver`."""

    enabled: bool = True
    stale_time_ms: int = Field(0, ge=0, description="Window in which data counts as fresh")
    cache_time_ms: int | None = Field(
        None, ge=0, description="Retention after the last subscriber leaves"
    )
    refetch_on_mount: bool | Literal["stale"] = "stale"
    refetch_interval_ms: int | None = Field(
        None, gt=0, description="Polling interval, or None to disable"
    )
