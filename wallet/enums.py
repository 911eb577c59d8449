# wallet/enums.py
from enum import Enum

class JobKind(Enum):
    SERVICE_TOGGLE = "service_toggle"
    FUNDS_SWEEP = "funds_sweep"

class OutcomeKind(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TRANSPORT_FAILURE = "transport_failure"

class OfferType(Enum):
    RELATIVE = "sw0reloffer"
    ABSOLUTE = "sw0absoffer"

class Phase(Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    AWAITING_FLIP = "awaiting_flip"
    AWAITING_SETTLE = "awaiting_settle"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.SUCCEEDED, Phase.FAILED, Phase.AMBIGUOUS)

class Verdict(Enum):
    PENDING = "pending"
    MATCH = "match"
    CONTRADICTED = "contradicted"
