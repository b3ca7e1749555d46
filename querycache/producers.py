"""
Async JSON-RPC producer adapter.

Features:
- httpx.AsyncClient with configurable timeouts.
- Retries with exponential backoff on 5xx / network errors.
- Proper 429 rate-limit handling (reads the Retry-After header).
- Checks the caller's cancellation token before every attempt.
- Builds producers and cache keys for ``QueryCache.fetch``.

Results are returned as decoded JSON; interpreting them is up to the
caller's ``transform``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Callable

import httpx

from querycache.cancellation import CancellationToken, QueryCancelled
from querycache.keys import make_query_key
from querycache.settings import settings

logger = logging.getLogger("querycache.producers")


# ── Custom exceptions ──────────────────────────────────────────
class RpcError(Exception):
    """Base for JSON-RPC errors."""


class RpcResponseError(RpcError):
    """The endpoint answered with a JSON-RPC ``error`` member."""

    def __init__(self, message: str, code: int | None = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class RateLimitError(RpcError):
    """429: rate limit exceeded."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamError(RpcError):
    """5xx or network failure that outlived the retries."""


# ── Helpers ─────────────────────────────────────────────────────
def _retry_after(response: httpx.Response) -> float | None:
    """Extract Retry-After header (seconds) if present."""
    val = response.headers.get("retry-after")
    if val:
        try:
            return float(val)
        except ValueError:
            pass
    return None


def _canonical_params(params: Any) -> str:
    return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)


# ── Client ──────────────────────────────────────────────────────
class JsonRpcClient:
    """Async JSON-RPC 2.0 client whose calls double as cache producers."""

    def __init__(
        self,
        endpoint: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint or settings.rpc_endpoint
        self._client = client or httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(
                connect=settings.http_connect_timeout,
                read=settings.http_read_timeout,
                write=settings.http_read_timeout,
                pool=settings.http_read_timeout,
            ),
        )
        self._ids = itertools.count(1)

    # ── Low-level request with retries ─────────────────────────
    async def _post(
        self, payload: dict, token: CancellationToken | None
    ) -> httpx.Response:
        """POST with retry + backoff on transient failures."""
        last_exc: Exception | None = None
        for attempt in range(1, settings.http_max_retries + 1):
            if token is not None:
                token.raise_if_cancelled()
            try:
                resp = await self._client.post(self.endpoint, json=payload)

                if resp.status_code == 429:
                    retry_after = _retry_after(resp)
                    hint = f" Retry after {retry_after:g}s." if retry_after else ""
                    raise RateLimitError(
                        f"RPC rate limit hit at {self.endpoint}.{hint}",
                        retry_after=retry_after,
                    )

                # 5xx: retry
                if resp.status_code >= 500:
                    last_exc = UpstreamError(
                        f"RPC endpoint returned {resp.status_code}"
                    )
                    await self._backoff(attempt)
                    continue

                resp.raise_for_status()
                return resp

            except (RateLimitError, QueryCancelled):
                raise
            except httpx.HTTPStatusError:
                raise
            except httpx.TransportError as exc:  # network errors
                last_exc = exc
                logger.warning(
                    "RPC request failed (attempt %d/%d): %s",
                    attempt, settings.http_max_retries, exc,
                )
                await self._backoff(attempt)

        raise UpstreamError(
            f"RPC request failed after {settings.http_max_retries} retries"
        ) from last_exc

    @staticmethod
    async def _backoff(attempt: int) -> None:
        wait = settings.http_backoff_base * (2 ** (attempt - 1))
        await asyncio.sleep(wait)

    # ── High-level API ─────────────────────────────────────────
    async def call(
        self,
        method: str,
        params: Any = None,
        *,
        token: CancellationToken | None = None,
    ) -> Any:
        """Invoke ``method`` and return the ``result`` member."""
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
        }
        if params is not None:
            payload["params"] = params

        resp = await self._post(payload, token)
        try:
            body = resp.json()
        except ValueError as exc:
            raise RpcError(f"RPC endpoint returned invalid JSON for {method}") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise RpcResponseError(
                str(error.get("message", "unknown error")),
                code=error.get("code"),
                data=error.get("data"),
            )
        if not isinstance(body, dict) or "result" not in body:
            raise RpcError(f"RPC response for {method} has no result")
        return body["result"]

    def producer(
        self,
        method: str,
        params: Any = None,
        transform: Callable[[Any], Any] | None = None,
    ):
        """Return a ``(token) -> awaitable`` producer for ``QueryCache.fetch``."""

        async def produce(token: CancellationToken) -> Any:
            result = await self.call(method, params, token=token)
            return transform(result) if transform is not None else result

        return produce

    def key_for(self, method: str, params: Any = None) -> str:
        """Cache key scoping ``method(params)`` to this endpoint."""
        return make_query_key("rpc", self.endpoint, method, _canonical_params(params))

    async def aclose(self) -> None:
        await self._client.aclose()
