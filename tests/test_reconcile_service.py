# tests/test_reconcile_service.py
import asyncio
import pytest

from wallet.cancellation import CancellationScope
from wallet.config import ReconcileSettings
from wallet.enums import Phase
from wallet.errors import EngineBusyError, ScopeCancelled, TransportError
from wallet.models import JobOutcome, JobRequest, Snapshot
from wallet.policies import JobPolicy, policy_for
from wallet.services.reconcile_service import AMBIGUOUS_HINT, ReconciliationEngine
from wallet.timer import CancellableTimer


class FakeSnapshots:
    """Replays a script of snapshots / exceptions; the last entry repeats."""
    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    async def fetch(self, scope):
        self.calls += 1
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item

class FakeLauncher:
    def __init__(self, outcome=None, exc=None):
        self.outcome = outcome or JobOutcome.accepted()
        self.exc = exc
        self.calls = []

    async def launch(self, request, scope):
        self.calls.append(request)
        if self.exc is not None:
            raise self.exc
        return self.outcome

class CountingTimer(CancellableTimer):
    def __init__(self):
        self.scheduled = 0

    def schedule(self, delay_s, callback, *args):
        self.scheduled += 1
        return super().schedule(delay_s, callback, *args)


def fast(**overrides):
    base = dict(poll_interval_s=0, settle_grace_s=0,
                flip_max_polls=10, flip_timeout_s=5,
                settle_max_polls=10, settle_timeout_s=5,
                max_poll_failures=3, settle_confirmations=1)
    base.update(overrides)
    return ReconcileSettings(**base)

def running(flag):
    return Snapshot(service_running=flag, coinjoin_in_progress=False)

def bonds(n, cj=False):
    return Snapshot(service_running=False, coinjoin_in_progress=cj, timelocked_output_count=n)

def make_engine(snapshots, launcher=None, settings=None, **kw):
    timer = CountingTimer()
    engine = ReconciliationEngine(launcher or FakeLauncher(), snapshots, settings or fast(), timer=timer, **kw)
    return engine, timer

async def reach(engine, phase, timeout=1.0):
    """Wait until the engine is in `phase`; fails instead of hanging if it never gets there."""
    async def _spin():
        while engine.current_state() is not phase:
            await asyncio.sleep(0)
    await asyncio.wait_for(_spin(), timeout)

async def collect(sub):
    return [s async for s in sub]

def phases(statuses):
    return [s.phase for s in statuses]

# ---- happy paths ----

@pytest.mark.asyncio
async def test_maker_start_flip_on_third_poll_then_settles():
    snaps = FakeSnapshots(running(False), running(False), running(False), running(True), running(True))
    engine, _ = make_engine(snaps)

    calls_at_settle = []
    sub = engine.start(JobRequest.maker_start())
    sub.add_listener(lambda s: s.phase is Phase.AWAITING_SETTLE and calls_at_settle.append(snaps.calls))
    out = await collect(sub)

    assert phases(out) == [
        Phase.LAUNCHING,
        Phase.AWAITING_FLIP, Phase.AWAITING_FLIP, Phase.AWAITING_FLIP,
        Phase.AWAITING_SETTLE,
        Phase.SUCCEEDED,
    ]
    # pre-snapshot + three flip polls
    assert calls_at_settle == [4]
    assert [s.poll for s in out[1:4]] == [0, 1, 2]
    assert engine.current_state() is Phase.SUCCEEDED
    assert not engine.active
    assert engine.last_status is out[-1]

@pytest.mark.asyncio
async def test_sweep_settles_on_count_increment():
    launcher = FakeLauncher()
    engine, _ = make_engine(FakeSnapshots(bonds(3), bonds(3), bonds(4)), launcher)

    sub = engine.start(JobRequest.funds_sweep(0, "bcrt1qbond", 4))
    out = await collect(sub)

    assert phases(out) == [Phase.LAUNCHING, Phase.AWAITING_SETTLE, Phase.AWAITING_SETTLE, Phase.SUCCEEDED]
    assert out[-1].snapshot.timelocked_output_count == 4
    assert len(launcher.calls) == 1
    assert sub.final is out[-1]

@pytest.mark.asyncio
async def test_pre_snapshot_is_taken_before_launch():
    order = []

    class Snaps(FakeSnapshots):
        async def fetch(self, scope):
            order.append("snapshot")
            return await super().fetch(scope)

    class Launcher(FakeLauncher):
        async def launch(self, request, scope):
            order.append("launch")
            return await super().launch(request, scope)

    engine, _ = make_engine(Snaps(running(True), running(False)), Launcher())
    await engine.start(JobRequest.maker_stop()).wait()
    assert order[:2] == ["snapshot", "launch"]

@pytest.mark.asyncio
async def test_settle_waits_grace_before_first_poll():
    engine, timer = make_engine(FakeSnapshots(bonds(0), bonds(1)), settings=fast(settle_grace_s=0.02))
    loop = asyncio.get_running_loop()
    t0 = loop.time()
    final = await engine.start(JobRequest.funds_sweep(0, "x", 4)).wait()
    assert final.phase is Phase.SUCCEEDED
    assert loop.time() - t0 >= 0.015
    assert timer.scheduled == 1

# ---- failures ----

@pytest.mark.asyncio
async def test_precondition_fails_without_launch():
    launcher = FakeLauncher()
    engine, timer = make_engine(FakeSnapshots(running(True)), launcher)
    out = await collect(engine.start(JobRequest.maker_start()))

    assert phases(out) == [Phase.LAUNCHING, Phase.FAILED]
    assert out[-1].reason == "maker is already running"
    assert launcher.calls == []
    assert timer.scheduled == 0

@pytest.mark.asyncio
async def test_maker_start_refused_while_coinjoin_runs():
    launcher = FakeLauncher()
    pre = Snapshot(service_running=False, coinjoin_in_progress=True)
    engine, timer = make_engine(FakeSnapshots(pre, running(True)), launcher)
    out = await collect(engine.start(JobRequest.maker_start()))

    assert phases(out) == [Phase.LAUNCHING, Phase.FAILED]
    assert "collaborative transaction" in out[-1].reason
    assert launcher.calls == []
    assert timer.scheduled == 0

@pytest.mark.asyncio
async def test_pre_snapshot_failure_fails_without_launch():
    launcher = FakeLauncher()
    engine, _ = make_engine(FakeSnapshots(TransportError("session read failed")), launcher)
    out = await collect(engine.start(JobRequest.maker_stop()))

    assert phases(out) == [Phase.LAUNCHING, Phase.FAILED]
    assert "session read failed" in out[-1].reason
    assert launcher.calls == []

@pytest.mark.asyncio
async def test_rejected_launch_keeps_reason():
    launcher = FakeLauncher(JobOutcome.rejected("Service cannot be started."))
    engine, timer = make_engine(FakeSnapshots(running(False)), launcher)
    out = await collect(engine.start(JobRequest.maker_start()))

    assert phases(out) == [Phase.LAUNCHING, Phase.FAILED]
    assert out[-1].reason == "Service cannot be started."
    assert timer.scheduled == 0

@pytest.mark.asyncio
async def test_transport_failure_on_launch_fails():
    engine, _ = make_engine(FakeSnapshots(running(False)), FakeLauncher(JobOutcome.transport_failure("timeout")))
    final = await engine.start(JobRequest.maker_start()).wait()
    assert final.phase is Phase.FAILED
    assert final.reason == "timeout"

@pytest.mark.asyncio
async def test_launcher_raising_transport_error_fails():
    engine, _ = make_engine(FakeSnapshots(running(False)), FakeLauncher(exc=TransportError("reset")))
    final = await engine.start(JobRequest.maker_start()).wait()
    assert final.phase is Phase.FAILED
    assert "reset" in final.reason

@pytest.mark.asyncio
async def test_settle_contradiction_fails():
    engine, _ = make_engine(FakeSnapshots(bonds(3), bonds(5)))
    final = await engine.start(JobRequest.funds_sweep(0, "x", 4)).wait()
    assert final.phase is Phase.FAILED
    assert "+2" in final.reason

@pytest.mark.asyncio
async def test_match_that_reverts_fails_and_never_succeeds():
    engine, _ = make_engine(FakeSnapshots(bonds(3), bonds(4), bonds(3), bonds(4)),
                            settings=fast(settle_confirmations=2))
    out = await collect(engine.start(JobRequest.funds_sweep(0, "x", 4)))

    assert out[-1].phase is Phase.FAILED
    assert Phase.SUCCEEDED not in phases(out)
    assert "reverted" in out[-1].reason

@pytest.mark.asyncio
async def test_toggle_flip_back_fails():
    snaps = FakeSnapshots(running(False), running(True), running(True), running(False))
    engine, _ = make_engine(snaps, settings=fast(settle_confirmations=2))
    out = await collect(engine.start(JobRequest.maker_start()))

    assert out[-1].phase is Phase.FAILED
    assert Phase.SUCCEEDED not in phases(out)

@pytest.mark.asyncio
async def test_unexpected_error_ends_as_failed():
    def broken(request):
        policy = policy_for(request)

        def settle(pre, cur):
            raise KeyError("boom")
        return JobPolicy(policy.kind, policy.precondition, settle, needs_outputs=True)

    engine, _ = make_engine(FakeSnapshots(bonds(0)), policy_factory=broken)
    final = await engine.start(JobRequest.funds_sweep(0, "x", 4)).wait()
    assert final.phase is Phase.FAILED
    assert "internal error" in final.reason

# ---- budgets ----

@pytest.mark.asyncio
async def test_flip_budget_exhausted_is_ambiguous_and_stops_polling():
    snaps = FakeSnapshots(running(True))
    engine, timer = make_engine(snaps, settings=fast(flip_max_polls=3))
    out = await collect(engine.start(JobRequest.maker_stop()))

    assert out[-1].phase is Phase.AMBIGUOUS
    assert AMBIGUOUS_HINT in out[-1].reason
    assert snaps.calls == 1 + 3
    await asyncio.sleep(0.02)
    assert snaps.calls == 4
    assert timer.scheduled == 3

@pytest.mark.asyncio
async def test_flip_timeout_is_ambiguous():
    snaps = FakeSnapshots(running(True))
    engine, _ = make_engine(snaps, settings=fast(flip_timeout_s=0))
    final = await engine.start(JobRequest.maker_stop()).wait()
    assert final.phase is Phase.AMBIGUOUS
    assert snaps.calls == 1

@pytest.mark.asyncio
async def test_settle_budget_exhausted_is_ambiguous():
    engine, _ = make_engine(FakeSnapshots(bonds(2)), settings=fast(settle_max_polls=4))
    out = await collect(engine.start(JobRequest.funds_sweep(0, "x", 4)))
    assert phases(out) == [Phase.LAUNCHING] + [Phase.AWAITING_SETTLE] * 5 + [Phase.AMBIGUOUS]

@pytest.mark.asyncio
async def test_single_poll_failure_is_tolerated():
    err = TransportError("connection reset")
    engine, _ = make_engine(FakeSnapshots(running(False), err, running(True), running(True)))
    final = await engine.start(JobRequest.maker_start()).wait()
    assert final.phase is Phase.SUCCEEDED

@pytest.mark.asyncio
async def test_consecutive_poll_failures_are_ambiguous():
    err = TransportError("connection refused")
    snaps = FakeSnapshots(running(False), err)
    engine, _ = make_engine(snaps, settings=fast(max_poll_failures=3))
    final = await engine.start(JobRequest.maker_start()).wait()

    assert final.phase is Phase.AMBIGUOUS
    assert "connection refused" in final.reason
    assert snaps.calls == 1 + 3

# ---- lifecycle ----

@pytest.mark.asyncio
async def test_second_start_while_active_raises_without_side_effects():
    snaps = FakeSnapshots(running(False), running(True))
    launcher = FakeLauncher()
    engine, _ = make_engine(snaps, launcher)

    sub = engine.start(JobRequest.maker_start())
    with pytest.raises(EngineBusyError):
        engine.start(JobRequest.maker_stop())
    assert engine.current_state() is Phase.LAUNCHING
    assert len(sub.history) == 1

    await sub.wait()
    assert len(launcher.calls) == 1
    assert launcher.calls[0].starts_service

@pytest.mark.asyncio
async def test_engine_can_run_again_after_terminal():
    engine, _ = make_engine(FakeSnapshots(running(True)))
    first = await engine.start(JobRequest.maker_start()).wait()
    assert first.phase is Phase.FAILED
    second = engine.start(JobRequest.maker_start())
    assert engine.current_state() is Phase.LAUNCHING
    await second.wait()

@pytest.mark.asyncio
@pytest.mark.parametrize("cancel_at", [Phase.LAUNCHING, Phase.AWAITING_FLIP, Phase.AWAITING_SETTLE])
async def test_cancel_stops_all_further_calls(cancel_at):
    if cancel_at is Phase.AWAITING_SETTLE:
        snaps = FakeSnapshots(bonds(3))
        request = JobRequest.funds_sweep(0, "x", 4)
    else:
        snaps = FakeSnapshots(running(False))
        request = JobRequest.maker_start()
    launcher = FakeLauncher()
    settings = fast(poll_interval_s=0.005, settle_grace_s=0.005,
                    flip_max_polls=1000, settle_max_polls=1000,
                    flip_timeout_s=60, settle_timeout_s=60)
    engine, timer = make_engine(snaps, launcher, settings)

    sub = engine.start(request)
    seen = []
    async for status in sub:
        seen.append(status)
        if status.phase is cancel_at:
            sub.unsubscribe()
            counts = (snaps.calls, len(launcher.calls), timer.scheduled)

    await asyncio.sleep(0.05)
    assert (snaps.calls, len(launcher.calls), timer.scheduled) == counts
    assert not any(s.phase.is_terminal for s in seen)
    assert sub.closed and sub.final is None
    assert engine.current_state() is Phase.IDLE
    assert not engine.active
    if cancel_at is Phase.LAUNCHING:
        assert counts == (0, 0, 0)

@pytest.mark.asyncio
async def test_unsubscribe_twice_equals_once():
    engine, timer = make_engine(FakeSnapshots(bonds(3)), settings=fast(settle_grace_s=10))
    sub = engine.start(JobRequest.funds_sweep(0, "x", 4))
    closed = []
    sub.on_closed(lambda: closed.append(1))
    await reach(engine, Phase.AWAITING_SETTLE)

    sub.unsubscribe()
    history = list(sub.history)
    sub.unsubscribe()

    assert closed == [1]
    assert sub.history == history
    assert await sub.wait() is None
    assert engine.current_state() is Phase.IDLE

@pytest.mark.asyncio
async def test_failing_close_listener_still_releases_run():
    root = CancellationScope(name="api")
    engine, _ = make_engine(FakeSnapshots(running(True)), scope=root.child("engine"))
    sub = engine.start(JobRequest.maker_start())
    closed = []

    def broken():
        raise RuntimeError("listener bug")

    sub.on_closed(broken)
    sub.on_closed(engine.close)
    sub.on_closed(lambda: closed.append(1))

    final = await asyncio.wait_for(sub.wait(), 1)
    # the run task ends cleanly: nothing escapes from the listener
    await asyncio.wait_for(engine._task, 1)
    assert final.phase is Phase.FAILED
    assert closed == [1]
    assert not engine.active
    assert "children=0" in repr(root)

@pytest.mark.asyncio
async def test_late_listener_gets_replay():
    engine, _ = make_engine(FakeSnapshots(running(True)))
    sub = engine.start(JobRequest.maker_start())
    got = []
    sub.add_listener(got.append)
    await sub.wait()
    assert phases(got) == [Phase.LAUNCHING, Phase.FAILED]

@pytest.mark.asyncio
async def test_parent_scope_cancel_tears_down_run():
    root = CancellationScope(name="app")
    snaps = FakeSnapshots(running(False))
    engine, _ = make_engine(snaps, settings=fast(poll_interval_s=10), scope=root.child("engine"))
    sub = engine.start(JobRequest.maker_start())
    await reach(engine, Phase.AWAITING_FLIP)

    root.cancel()
    assert await sub.wait() is None
    with pytest.raises(ScopeCancelled):
        engine.start(JobRequest.maker_start())

@pytest.mark.asyncio
async def test_close_refuses_new_runs():
    engine, _ = make_engine(FakeSnapshots(running(False)))
    engine.close()
    with pytest.raises(ScopeCancelled):
        engine.start(JobRequest.maker_start())
