"""
Composite cache key helpers.

Keys look like ``kind:part1:part2``. Every component is percent-encoded,
so components may themselves contain ``:`` (RPC endpoints, for example):

  balance:addr1
  rpc:https%3A%2F%2Fapi.devnet.solana.com:getBalance:%5B%22addr1%22%5D

Malformed input raises ValueError with a human-readable message.
"""

from __future__ import annotations

from urllib.parse import quote, unquote

_SEPARATOR = ":"


def _encode(component: object) -> str:
    text = str(component).strip()
    if not text:
        raise ValueError("Query key components must not be empty.")
    return quote(text, safe="")


def make_query_key(kind: str, *parts: object) -> str:
    """Build a key from a query kind and its identifying parts."""
    return _SEPARATOR.join(_encode(c) for c in (kind, *parts))


def parse_query_key(key: str) -> tuple[str, list[str]]:
    """Return ``(kind, parts)`` from a key built by :func:`make_query_key`."""
    if not key or not key.strip():
        raise ValueError("Query key must not be empty.")
    kind, *parts = key.strip().split(_SEPARATOR)
    return unquote(kind), [unquote(p) for p in parts]
