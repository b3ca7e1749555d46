"""
Cooperative cancellation tokens.

Tokens form a tree: a child is cancelled whenever any ancestor is. The
fetch coordinator gives every producer call its own token and links the
caller's optional token to it, so aborting either side aborts the call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger("querycache.cancellation")


class QueryCancelled(Exception):
    """Raised by :meth:`CancellationToken.raise_if_cancelled`."""


class CancellationToken:
    """Cancellation state shared between a caller and a producer."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._parent: CancellationToken | None = None
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._children: list[CancellationToken] = []
        if parent is not None:
            self.link(parent)

    @property
    def cancelled(self) -> bool:
        token: CancellationToken | None = self
        while token is not None:
            if token._cancelled:
                return True
            token = token._parent
        return False

    def link(self, parent: CancellationToken) -> None:
        """Make this token a child of ``parent``, leaving any previous one."""
        self.unlink()
        self._parent = parent
        parent._children.append(self)
        if parent.cancelled:
            self.cancel()

    def unlink(self) -> None:
        """Detach from the parent; its cancellation no longer reaches us."""
        parent, self._parent = self._parent, None
        if parent is None:
            return
        try:
            parent._children.remove(self)
        except ValueError:
            pass

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancellation callback failed")
        children, self._children = self._children, []
        for token in children:
            token.cancel()

    def add_callback(self, cb: Callable[[], None]) -> None:
        """Run ``cb`` once on cancellation, immediately if already cancelled."""
        if self.cancelled:
            cb()
            return
        self._callbacks.append(cb)

    def remove_callback(self, cb: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(cb)
        except ValueError:
            pass

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise QueryCancelled("query was cancelled")

    async def wait(self) -> None:
        """Return once this token is cancelled."""
        if self.cancelled:
            return
        waiter = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        self.add_callback(_wake)
        try:
            await waiter
        finally:
            self.remove_callback(_wake)

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.cancelled}>"
