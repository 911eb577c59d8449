# wallet/models.py
from dataclasses import dataclass
from typing import Optional, Union
from wallet.enums import JobKind, OutcomeKind, OfferType, Phase, Verdict


def percentage_to_factor(value: float, precision: int = 6) -> float:
    """0.03 (%) -> 0.0003. Rounded so 0.0027 / 100 does not become 0.000027000000000000002."""
    return round(float(value) / 100, precision)

def factor_to_percentage(value: float, precision: int = 6) -> float:
    return round(float(value) * 100, precision)


# accepted relative fee range, in percent
REL_FEE_PERCENTAGE_MIN = 0.0
REL_FEE_PERCENTAGE_MAX = 10.0


@dataclass(frozen=True)
class MakerStartParams:
    cjfee_a: int = 250                  # absolute fee (sats)
    cjfee_r: float = 0.0003             # relative fee (factor, not percent)
    ordertype: OfferType = OfferType.RELATIVE
    minsize: int = 100_000              # sats

    def __post_init__(self):
        pct = factor_to_percentage(self.cjfee_r)
        if not REL_FEE_PERCENTAGE_MIN <= pct <= REL_FEE_PERCENTAGE_MAX:
            raise ValueError(
                f"relative fee {pct}% outside {REL_FEE_PERCENTAGE_MIN}%..{REL_FEE_PERCENTAGE_MAX}%"
            )
        if self.cjfee_a < 0:
            raise ValueError(f"absolute fee must be >= 0, got {self.cjfee_a}")
        if self.minsize < 0:
            raise ValueError(f"minsize must be >= 0, got {self.minsize}")

    def to_body(self) -> dict:
        return {
            "txfee": 0,
            "cjfee_a": int(self.cjfee_a),
            "cjfee_r": self.cjfee_r,
            "ordertype": self.ordertype.value,
            "minsize": int(self.minsize),
        }


@dataclass(frozen=True)
class MakerStopParams:
    pass


@dataclass(frozen=True)
class SweepParams:
    mixdepth: int                       # source account
    destination: str                    # timelocked address
    counterparties: int

    def to_body(self) -> dict:
        return {
            "mixdepth": int(self.mixdepth),
            "destination": self.destination,
            "amount_sats": 0,           # 0 = sweep, no change output
            "counterparties": int(self.counterparties),
        }


JobParams = Union[MakerStartParams, MakerStopParams, SweepParams]


@dataclass(frozen=True)
class JobRequest:
    kind: JobKind
    params: JobParams

    @classmethod
    def maker_start(cls, params: Optional[MakerStartParams] = None) -> "JobRequest":
        return cls(JobKind.SERVICE_TOGGLE, params or MakerStartParams())

    @classmethod
    def maker_stop(cls) -> "JobRequest":
        return cls(JobKind.SERVICE_TOGGLE, MakerStopParams())

    @classmethod
    def funds_sweep(cls, mixdepth: int, destination: str, counterparties: int) -> "JobRequest":
        return cls(JobKind.FUNDS_SWEEP, SweepParams(mixdepth, destination, counterparties))

    def __post_init__(self):
        expected = (MakerStartParams, MakerStopParams) if self.kind is JobKind.SERVICE_TOGGLE else (SweepParams,)
        if not isinstance(self.params, expected):
            raise TypeError(f"{type(self.params).__name__} is not valid for job kind {self.kind.value}")

    @property
    def starts_service(self) -> bool:
        return isinstance(self.params, MakerStartParams)


@dataclass(frozen=True)
class JobOutcome:
    kind: OutcomeKind
    reason: Optional[str] = None

    @classmethod
    def accepted(cls) -> "JobOutcome":
        return cls(OutcomeKind.ACCEPTED)

    @classmethod
    def rejected(cls, reason: str) -> "JobOutcome":
        return cls(OutcomeKind.REJECTED, reason)

    @classmethod
    def transport_failure(cls, reason: str) -> "JobOutcome":
        return cls(OutcomeKind.TRANSPORT_FAILURE, reason)

    @property
    def is_accepted(self) -> bool:
        return self.kind is OutcomeKind.ACCEPTED


@dataclass(frozen=True)
class Delta:
    running_flipped: Optional[bool]     # None when either side did not observe the service
    count_change: Optional[int]         # None when either side did not count outputs


@dataclass(frozen=True)
class Snapshot:
    """Observable wallet/service facts at one instant."""
    service_running: Optional[bool] = None
    coinjoin_in_progress: Optional[bool] = None
    timelocked_output_count: Optional[int] = None

    def delta(self, after: "Snapshot") -> Delta:
        flipped = None
        if self.service_running is not None and after.service_running is not None:
            flipped = self.service_running is not after.service_running
        change = None
        if self.timelocked_output_count is not None and after.timelocked_output_count is not None:
            change = after.timelocked_output_count - self.timelocked_output_count
        return Delta(running_flipped=flipped, count_change=change)


@dataclass(frozen=True)
class Check:
    """Result of evaluating a flip/settle predicate against one snapshot."""
    verdict: Verdict
    reason: Optional[str] = None


@dataclass(frozen=True)
class ReconcileStatus:
    phase: Phase
    reason: Optional[str] = None
    snapshot: Optional[Snapshot] = None
    poll: int = 0                       # tick number inside the phase, 0 on entry

