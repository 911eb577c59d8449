# wallet/config.py
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional
from wallet.enums import JobKind

@dataclass(frozen=True)
class ReconcileSettings:
    """Poll cadence and per-phase budgets of the reconciliation engine (seconds)."""
    poll_interval_s: float = 2.0
    flip_max_polls: int = 30
    flip_timeout_s: float = 60.0
    settle_grace_s: float = 1.0         # let the backend converge before the first settle read
    settle_max_polls: int = 60
    settle_timeout_s: float = 120.0
    max_poll_failures: int = 3          # consecutive failed polls before giving up as ambiguous
    settle_confirmations: int = 1       # consecutive matching settle polls required

    def __post_init__(self):
        if self.poll_interval_s < 0 or self.settle_grace_s < 0:
            raise ValueError("delays must be >= 0")
        if self.flip_max_polls < 1 or self.settle_max_polls < 1:
            raise ValueError("poll budgets must be >= 1")
        if self.max_poll_failures < 1 or self.settle_confirmations < 1:
            raise ValueError("max_poll_failures and settle_confirmations must be >= 1")

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any], kind: Optional[JobKind] = None) -> "ReconcileSettings":
        """Base `reconcile` section overlaid with the per-kind subsection, e.g. reconcile.funds_sweep."""
        section = dict(cfg.get("reconcile", {}) or {})
        merged = {k: v for k, v in section.items() if not isinstance(v, dict)}
        if kind is not None:
            merged.update(section.get(kind.value) or {})

        kwargs = {}
        for f in fields(cls):
            if f.name in merged and merged[f.name] is not None:
                kwargs[f.name] = f.type(merged[f.name]) if f.type in (int, float) else merged[f.name]
        return cls(**kwargs)
