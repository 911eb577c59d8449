# wallet/policies.py
"""
Per-kind predicates plugged into the reconciliation engine.

jmwalletd gives no completion signal for maker start/stop or for a
collaborative sweep, so success is inferred from snapshots:

- service toggle: the `maker_running` flag flips to the target value and is
  still there after the settle grace delay.
- funds sweep: nothing flips; the sweep has settled when the collaborative
  transaction is over and exactly one more timelocked output exists than
  before launch.

The sweep check is count based. It does not identify which output was created
or its amount, so an unrelated bond appearing in the same window is
indistinguishable from the one this job created.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from wallet.enums import JobKind, Verdict
from wallet.models import Check, JobRequest, Snapshot

PENDING = Check(Verdict.PENDING)
MATCH = Check(Verdict.MATCH)

Precondition = Callable[[Snapshot], Optional[str]]
Predicate = Callable[[Snapshot, Snapshot], Check]


@dataclass(frozen=True)
class JobPolicy:
    kind: JobKind
    precondition: Precondition
    settle: Predicate
    flip: Optional[Predicate] = None    # None: skip the awaiting_flip phase
    needs_outputs: bool = False         # snapshot must count timelocked outputs


def _running_label(running: bool) -> str:
    return "running" if running else "stopped"


def service_toggle_policy(target: bool) -> JobPolicy:
    """`target` is the expected `maker_running` value once the job took effect."""

    def precondition(pre: Snapshot) -> Optional[str]:
        if pre.coinjoin_in_progress is True:
            return "a collaborative transaction is in progress; wait for it to finish"
        if pre.service_running is target:
            return f"maker is already {_running_label(target)}"
        return None

    def flip(pre: Snapshot, cur: Snapshot) -> Check:
        # identity, not truthiness: None (unknown) never counts as a flip
        if cur.service_running is target:
            return MATCH
        return PENDING

    def settle(pre: Snapshot, cur: Snapshot) -> Check:
        if cur.service_running is target:
            return MATCH
        if cur.service_running is (not target):
            return Check(Verdict.CONTRADICTED, f"maker flipped back to {_running_label(not target)}")
        return PENDING

    return JobPolicy(JobKind.SERVICE_TOGGLE, precondition=precondition, flip=flip, settle=settle)


def funds_sweep_policy(expected_increment: int = 1) -> JobPolicy:

    def precondition(pre: Snapshot) -> Optional[str]:
        if pre.service_running is True:
            return "maker is running; stop it before creating a fidelity bond"
        if pre.coinjoin_in_progress is True:
            return "a collaborative transaction is already in progress"
        if pre.timelocked_output_count is None:
            return "timelocked output count unavailable"
        return None

    def settle(pre: Snapshot, cur: Snapshot) -> Check:
        if cur.coinjoin_in_progress is True:
            return PENDING
        change = pre.delta(cur).count_change
        if change is None or change == 0:
            return PENDING
        if change == expected_increment:
            return MATCH
        return Check(
            Verdict.CONTRADICTED,
            f"timelocked outputs changed by {change:+d}, expected {expected_increment:+d}",
        )

    return JobPolicy(JobKind.FUNDS_SWEEP, precondition=precondition, settle=settle, needs_outputs=True)


def policy_for(request: JobRequest) -> JobPolicy:
    if request.kind is JobKind.SERVICE_TOGGLE:
        return service_toggle_policy(target=request.starts_service)
    if request.kind is JobKind.FUNDS_SWEEP:
        return funds_sweep_policy()
    raise ValueError(f"unsupported job kind: {request.kind}")
