# wallet/cancellation.py
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from utils.logger import logger
from wallet.errors import ScopeCancelled

T = TypeVar("T")


class CancellationScope:
    """
    Composable cancellation token.

    - child() links a sub-scope; cancelling a parent cancels every descendant.
    - cancel() is synchronous and idempotent: callbacks run exactly once.
    - run(aw) is the guarded suspend point: the awaited work is cancelled together
      with the scope, and a result that arrives after cancellation is discarded.
    """

    def __init__(self, parent: Optional["CancellationScope"] = None, name: str = "") -> None:
        self.name = name
        self._parent = parent
        self._cancelled = False
        self._children: List[CancellationScope] = []
        self._callbacks: List[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def child(self, name: str = "") -> "CancellationScope":
        sub = CancellationScope(parent=self, name=name)
        if self._cancelled:
            sub.cancel()
        else:
            self._children.append(sub)
        return sub

    def add_callback(self, cb: Callable[[], Any]) -> Callable[[], None]:
        """Register cb to run on cancel; returns a remover. Runs immediately if already cancelled."""
        if self._cancelled:
            cb()
            return lambda: None
        self._callbacks.append(cb)

        def _remove() -> None:
            if cb in self._callbacks:
                self._callbacks.remove(cb)
        return _remove

    def cancel(self) -> bool:
        """Returns True if this call performed the cancellation, False if it was already done."""
        if self._cancelled:
            return False
        self._cancelled = True

        children, self._children = self._children, []
        callbacks, self._callbacks = self._callbacks, []
        for sub in children:
            sub.cancel()
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception(f"cancel callback failed in scope {self.name or id(self)}")

        if self._parent is not None:
            self._parent._forget(self)
        return True

    def _forget(self, sub: "CancellationScope") -> None:
        if sub in self._children:
            self._children.remove(sub)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ScopeCancelled(f"scope {self.name or id(self)} cancelled")

    async def run(self, aw: Awaitable[T]) -> T:
        if self._cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            self.raise_if_cancelled()
        fut = asyncio.ensure_future(aw)
        remove = self.add_callback(fut.cancel)
        try:
            result = await fut
        except asyncio.CancelledError:
            if self._cancelled:
                raise ScopeCancelled(f"scope {self.name or id(self)} cancelled") from None
            raise
        finally:
            remove()
        # stale result: the scope was cancelled while the work was completing
        self.raise_if_cancelled()
        return result

    def __repr__(self) -> str:
        return f"CancellationScope(name={self.name!r}, cancelled={self._cancelled}, children={len(self._children)})"
