# wallet/timer.py
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from wallet.cancellation import CancellationScope


class TimerHandle:
    """One scheduled callback. `fired` / `cancelled` are mutually exclusive."""

    __slots__ = ("_handle", "fired", "cancelled")

    def __init__(self) -> None:
        self._handle: Optional[asyncio.TimerHandle] = None
        self.fired = False
        self.cancelled = False

    @property
    def pending(self) -> bool:
        return not (self.fired or self.cancelled)


class CancellableTimer:
    """
    Schedules single delayed callbacks on the running event loop.
    cancel() before firing suppresses the callback; after firing, or twice, it is a no-op.
    """

    def schedule(self, delay_s: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle()

        def _fire() -> None:
            if not handle.pending:
                return
            handle.fired = True
            callback(*args)

        handle._handle = loop.call_later(max(0.0, delay_s), _fire)
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        if not handle.pending:
            return
        handle.cancelled = True
        if handle._handle is not None:
            handle._handle.cancel()

    async def sleep(self, delay_s: float, scope: CancellationScope) -> None:
        """Timer suspend point guarded by `scope`; raises ScopeCancelled when aborted."""
        scope.raise_if_cancelled()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not fut.done():
                fut.set_result(None)

        handle = self.schedule(delay_s, _wake)
        try:
            await scope.run(fut)
        finally:
            self.cancel(handle)
