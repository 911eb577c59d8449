# wallet/app/wallet_api.py
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from infra.http_client import HttpError, WalletApiError
from utils.logger import logger
from wallet.cancellation import CancellationScope
from wallet.config import ReconcileSettings
from wallet.enums import OfferType
from wallet.models import JobRequest, MakerStartParams
from wallet.policies import policy_for
from wallet.schemas import ConfigValue
from wallet.services.endpoints import Endpoints
from wallet.services.launcher import JobLauncher
from wallet.services.reconcile_service import ReconciliationEngine, Subscription
from wallet.services.snapshot_service import SnapshotService


def maker_params_from_cfg(cfg: Mapping[str, Any]) -> MakerStartParams:
    m = cfg.get("maker", {}) or {}
    defaults = MakerStartParams()
    return MakerStartParams(
        cjfee_a=int(m.get("cjfee_a", defaults.cjfee_a)),
        cjfee_r=float(m.get("cjfee_r", defaults.cjfee_r)),
        ordertype=OfferType(m.get("ordertype", defaults.ordertype.value)),
        minsize=int(m.get("minsize", defaults.minsize)),
    )


class WalletJobAPI:
    """
    Application-facing job API.
    Builds the request, launches it and hands back the status stream of its
    reconciliation. One engine per job; every engine hangs off `scope`, so
    close() tears down whatever is still being watched.
    """

    def __init__(self,
                 http_client,
                 endpoints: Endpoints,
                 cfg: Optional[Mapping[str, Any]] = None,
                 *,
                 scope: Optional[CancellationScope] = None,
                 ):
        self.http = http_client
        self.ep = endpoints
        self.cfg = cfg or {}
        self.scope = scope or CancellationScope(name="wallet-api")
        self.launcher = JobLauncher(http_client, endpoints)

    # ---- jobs ----
    def start_maker(self, params: Optional[MakerStartParams] = None) -> Subscription:
        return self.submit(JobRequest.maker_start(params or maker_params_from_cfg(self.cfg)))

    def stop_maker(self) -> Subscription:
        return self.submit(JobRequest.maker_stop())

    def toggle_maker(self, running: bool) -> Subscription:
        return self.start_maker() if running else self.stop_maker()

    async def create_fidelity_bond(self, mixdepth: int, destination: str,
                                   counterparties: Optional[int] = None) -> Subscription:
        """
        Sweep `mixdepth` into the timelocked `destination` address.
        Without an explicit count, uses the daemon's POLICY.minimum_makers.
        """
        if counterparties is None:
            counterparties = await self.minimum_makers()
        return self.submit(JobRequest.funds_sweep(mixdepth, destination, counterparties))

    def submit(self, request: JobRequest) -> Subscription:
        policy = policy_for(request)
        engine = ReconciliationEngine(
            self.launcher,
            SnapshotService(self.http, self.ep, with_outputs=policy.needs_outputs),
            ReconcileSettings.from_cfg(self.cfg, request.kind),
            scope=self.scope.child(name=f"engine-{request.kind.value}"),
        )
        sub = engine.start(request)
        # one-shot engine: detach it from the api scope once the run is over
        sub.on_closed(engine.close)
        return sub

    def close(self) -> None:
        self.scope.cancel()

    # ---- daemon config ----
    async def minimum_makers(self) -> int:
        fallback = int((self.cfg.get("bond", {}) or {}).get("default_counterparties", 4))
        try:
            payload = await self.http.post_private(
                self.ep.path("config_get"), {"section": "POLICY", "field": "minimum_makers"}
            )
            value = ConfigValue.model_validate(payload).configvalue
            return int(value) if value not in (None, "") else fallback
        except (HttpError, WalletApiError, ValidationError, TypeError, ValueError) as e:
            logger.warning(f"minimum_makers unavailable ({e}), using {fallback}")
            return fallback
