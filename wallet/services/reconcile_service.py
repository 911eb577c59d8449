# wallet/services/reconcile_service.py
from __future__ import annotations

import asyncio
from typing import Callable, Dict, FrozenSet, List, Optional

from utils.logger import logger
from wallet.cancellation import CancellationScope
from wallet.config import ReconcileSettings
from wallet.enums import Phase, Verdict
from wallet.errors import EngineBusyError, ScopeCancelled, TransportError
from wallet.models import JobRequest, ReconcileStatus, Snapshot
from wallet.policies import JobPolicy, Predicate, policy_for
from wallet.services.launcher import Launcher
from wallet.services.snapshot_service import SnapshotSource
from wallet.timer import CancellableTimer

AMBIGUOUS_HINT = "the outcome is unknown, check the wallet manually"

_ALLOWED: Dict[Phase, FrozenSet[Phase]] = {
    Phase.IDLE: frozenset({Phase.LAUNCHING}),
    Phase.LAUNCHING: frozenset({Phase.AWAITING_FLIP, Phase.AWAITING_SETTLE, Phase.FAILED}),
    Phase.AWAITING_FLIP: frozenset({Phase.AWAITING_FLIP, Phase.AWAITING_SETTLE, Phase.FAILED, Phase.AMBIGUOUS}),
    Phase.AWAITING_SETTLE: frozenset({Phase.AWAITING_SETTLE, Phase.SUCCEEDED, Phase.FAILED, Phase.AMBIGUOUS}),
}

_END = object()


class Subscription:
    """
    Ordered, finite stream of ReconcileStatus values for one run.

    Ends after exactly one terminal status, or without one when unsubscribed.
    Consume it with `async for`, with push listeners, or with `await wait()`.
    """

    def __init__(self, scope: CancellationScope) -> None:
        self._scope = scope
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = asyncio.Event()
        self._listeners: List[Callable[[ReconcileStatus], None]] = []
        self._close_listeners: List[Callable[[], None]] = []
        self._closed = False
        self._final: Optional[ReconcileStatus] = None
        self.history: List[ReconcileStatus] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def final(self) -> Optional[ReconcileStatus]:
        return self._final

    def add_listener(self, cb: Callable[[ReconcileStatus], None]) -> None:
        """Push-style consumer; statuses already published are replayed first."""
        for status in self.history:
            cb(status)
        if not self._closed:
            self._listeners.append(cb)

    def on_closed(self, cb: Callable[[], None]) -> None:
        if self._closed:
            cb()
        else:
            self._close_listeners.append(cb)

    def unsubscribe(self) -> None:
        self._scope.cancel()

    async def wait(self) -> Optional[ReconcileStatus]:
        """Terminal status, or None if the run was cancelled."""
        await self._done.wait()
        return self._final

    def _publish(self, status: ReconcileStatus) -> None:
        if self._closed:
            return
        self.history.append(status)
        if status.phase.is_terminal:
            self._final = status
        self._queue.put_nowait(status)
        for cb in list(self._listeners):
            try:
                cb(status)
            except Exception:
                logger.exception(f"status listener failed on {status.phase.value}")

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self._queue.put_nowait(_END)
        self._done.set()
        callbacks, self._close_listeners = self._close_listeners, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("close listener failed")

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ReconcileStatus:
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item


class ReconciliationEngine:
    """
    Infers completion of fire-and-forget jmwalletd jobs by polling snapshots.

    launching -> [awaiting_flip ->] awaiting_settle -> succeeded | failed | ambiguous

    - The pre-snapshot is taken before the launch call so an effect that happens
      quickly is never part of the baseline.
    - One run at a time; each run owns a child of the engine scope. Cancelling it
      (Subscription.unsubscribe, or close() on the engine) aborts the pending
      poll/timer and ends the stream without a terminal status.
    - Every suspend point goes through the run scope, so a result that resumes
      after cancellation is discarded instead of applied.
    """

    def __init__(self,
                 launcher: Launcher,
                 snapshots: SnapshotSource,
                 settings: Optional[ReconcileSettings] = None,
                 *,
                 scope: Optional[CancellationScope] = None,
                 timer: Optional[CancellableTimer] = None,
                 policy_factory: Callable[[JobRequest], JobPolicy] = policy_for,
                 ) -> None:
        self._launcher = launcher
        self._snapshots = snapshots
        self._settings = settings or ReconcileSettings()
        self._scope = scope or CancellationScope(name="reconcile-engine")
        self._timer = timer or CancellableTimer()
        self._policy_for = policy_factory

        self._phase = Phase.IDLE
        self._last: Optional[ReconcileStatus] = None
        self._run_scope: Optional[CancellationScope] = None
        self._sub: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    # ---- public API ---------------------------------------------------------
    @property
    def settings(self) -> ReconcileSettings:
        return self._settings

    @property
    def active(self) -> bool:
        return self._run_scope is not None

    @property
    def last_status(self) -> Optional[ReconcileStatus]:
        return self._last

    def current_state(self) -> Phase:
        return self._phase

    def start(self, request: JobRequest) -> Subscription:
        loop = asyncio.get_running_loop()
        if self._scope.cancelled:
            raise ScopeCancelled("engine closed")
        if self._run_scope is not None:
            raise EngineBusyError(f"reconciliation already running (phase={self._phase.value})")

        policy = self._policy_for(request)
        run_scope = self._scope.child(name=request.kind.value)
        sub = Subscription(run_scope)
        self._run_scope, self._sub = run_scope, sub
        self._phase = Phase.IDLE
        run_scope.add_callback(lambda: self._on_run_cancelled(run_scope, sub))

        self._emit(run_scope, ReconcileStatus(Phase.LAUNCHING))
        self._task = loop.create_task(
            self._run(request, policy, run_scope, sub), name=f"reconcile-{request.kind.value}"
        )
        return sub

    def close(self) -> None:
        """Tear down: cancels the active run (if any) and refuses further starts."""
        self._scope.cancel()

    # ---- run ----------------------------------------------------------------
    async def _run(self, request: JobRequest, policy: JobPolicy,
                   scope: CancellationScope, sub: Subscription) -> None:
        try:
            final = await self._drive(request, policy, scope)
        except ScopeCancelled:
            logger.debug(f"reconcile {request.kind.value}: run discarded after cancellation")
            return
        except asyncio.CancelledError:
            # the task itself was cancelled (loop shutdown): release the run
            scope.cancel()
            raise
        except Exception as e:
            logger.exception(f"reconcile {request.kind.value}: unexpected error")
            final = ReconcileStatus(Phase.FAILED, reason=f"internal error: {e!r}")
        self._finish(scope, sub, final)

    async def _drive(self, request: JobRequest, policy: JobPolicy,
                     scope: CancellationScope) -> ReconcileStatus:
        s = self._settings

        try:
            pre = await scope.run(self._snapshots.fetch(scope))
        except TransportError as e:
            return ReconcileStatus(Phase.FAILED, reason=f"could not read state before launch: {e}")

        blocked = policy.precondition(pre)
        if blocked:
            return ReconcileStatus(Phase.FAILED, reason=blocked, snapshot=pre)

        try:
            outcome = await scope.run(self._launcher.launch(request, scope))
        except TransportError as e:
            return ReconcileStatus(Phase.FAILED, reason=str(e), snapshot=pre)
        if not outcome.is_accepted:
            return ReconcileStatus(Phase.FAILED, reason=outcome.reason or outcome.kind.value, snapshot=pre)

        if policy.flip is not None:
            self._emit(scope, ReconcileStatus(Phase.AWAITING_FLIP, snapshot=pre))
            flipped = await self._poll(
                scope, Phase.AWAITING_FLIP, pre, policy.flip,
                first_delay_s=s.poll_interval_s,
                max_polls=s.flip_max_polls,
                timeout_s=s.flip_timeout_s,
                confirmations=1,
                on_match=Phase.AWAITING_SETTLE,
            )
            if flipped.phase.is_terminal:
                return flipped
            self._emit(scope, ReconcileStatus(Phase.AWAITING_SETTLE, snapshot=flipped.snapshot))
        else:
            self._emit(scope, ReconcileStatus(Phase.AWAITING_SETTLE, snapshot=pre))

        return await self._poll(
            scope, Phase.AWAITING_SETTLE, pre, policy.settle,
            first_delay_s=s.settle_grace_s,
            max_polls=s.settle_max_polls,
            timeout_s=s.settle_timeout_s,
            confirmations=s.settle_confirmations,
            on_match=Phase.SUCCEEDED,
        )

    async def _poll(self,
                    scope: CancellationScope,
                    phase: Phase,
                    pre: Snapshot,
                    predicate: Predicate,
                    *,
                    first_delay_s: float,
                    max_polls: int,
                    timeout_s: float,
                    confirmations: int,
                    on_match: Phase,
                    ) -> ReconcileStatus:
        """
        Sequential poll loop for one phase. Re-emits `phase` after every
        inconclusive tick; returns the status that leaves the phase.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        delay = first_delay_s
        polls = failures = matches = 0

        while True:
            if polls >= max_polls or loop.time() >= deadline:
                return ReconcileStatus(
                    Phase.AMBIGUOUS,
                    reason=f"{phase.value}: nothing conclusive after {polls} polls; {AMBIGUOUS_HINT}",
                    poll=polls,
                )

            await self._timer.sleep(delay, scope)
            delay = self._settings.poll_interval_s
            polls += 1

            try:
                cur = await scope.run(self._snapshots.fetch(scope))
            except TransportError as e:
                failures += 1
                logger.warning(f"{phase.value} poll #{polls} failed ({failures}/{self._settings.max_poll_failures}): {e}")
                if failures >= self._settings.max_poll_failures:
                    return ReconcileStatus(
                        Phase.AMBIGUOUS,
                        reason=f"state unreadable after {failures} consecutive polls ({e}); {AMBIGUOUS_HINT}",
                        poll=polls,
                    )
                continue
            failures = 0

            check = predicate(pre, cur)
            if check.verdict is Verdict.MATCH:
                matches += 1
                if matches >= confirmations:
                    return ReconcileStatus(on_match, snapshot=cur, poll=polls)
            elif check.verdict is Verdict.CONTRADICTED:
                return ReconcileStatus(Phase.FAILED, reason=check.reason, snapshot=cur, poll=polls)
            elif matches:
                return ReconcileStatus(
                    Phase.FAILED, reason=f"{phase.value}: observed effect reverted", snapshot=cur, poll=polls
                )

            self._emit(scope, ReconcileStatus(phase, snapshot=cur, poll=polls))

    # ---- transitions --------------------------------------------------------
    def _emit(self, scope: CancellationScope, status: ReconcileStatus) -> bool:
        if scope.cancelled or scope is not self._run_scope:
            return False
        if status.phase not in _ALLOWED.get(self._phase, frozenset()):
            raise RuntimeError(f"illegal transition {self._phase.value} -> {status.phase.value}")
        self._phase = status.phase
        self._last = status
        if status.phase.is_terminal:
            logger.info(f"reconcile {scope.name}: {status.phase.value} reason={status.reason}")
        else:
            logger.info(f"reconcile {scope.name}: {status.phase.value} poll={status.poll}")
        self._sub._publish(status)
        return True

    def _finish(self, scope: CancellationScope, sub: Subscription, status: ReconcileStatus) -> None:
        if not self._emit(scope, status):
            return
        self._run_scope = None
        try:
            sub._close()
        finally:
            # release the run scope: any leftover timer/child is cancelled
            scope.cancel()

    def _on_run_cancelled(self, scope: CancellationScope, sub: Subscription) -> None:
        sub._close()
        if self._run_scope is scope:
            logger.info(f"reconcile {scope.name}: cancelled in phase {self._phase.value}")
            self._run_scope = None
            self._phase = Phase.IDLE
