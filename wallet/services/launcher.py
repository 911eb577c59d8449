# wallet/services/launcher.py
from typing import Protocol

from infra.http_client import HttpError, WalletApiError
from utils.logger import logger
from wallet.cancellation import CancellationScope
from wallet.enums import JobKind
from wallet.models import JobOutcome, JobRequest, MakerStartParams, MakerStopParams, SweepParams


class Launcher(Protocol):
    async def launch(self, request: JobRequest, scope: CancellationScope) -> JobOutcome: ...


class JobLauncher:
    """
    Issues the single fire-and-forget call that starts a job.

    A 2xx answer only means jmwalletd accepted the request; the effect has to be
    observed separately. Exactly one HTTP call per launch, never retried.
    """

    def __init__(self, http_client, endpoints) -> None:
        self._http = http_client
        self._ep = endpoints

    async def launch(self, request: JobRequest, scope: CancellationScope) -> JobOutcome:
        scope.raise_if_cancelled()
        logger.info(f"launch {request.kind.value} {type(request.params).__name__}")
        try:
            await self._send(request)
        except WalletApiError as e:
            logger.warning(f"launch rejected status={e.status}: {e.message}")
            return JobOutcome.rejected(e.message)
        except HttpError as e:
            logger.warning(f"launch transport failure status={e.status}: {e.message}")
            return JobOutcome.transport_failure(e.message)
        return JobOutcome.accepted()

    async def _send(self, request: JobRequest) -> dict:
        params = request.params
        if request.kind is JobKind.SERVICE_TOGGLE and isinstance(params, MakerStartParams):
            return await self._http.post_private(self._ep.path("maker_start"), params.to_body(), retry=False)
        if request.kind is JobKind.SERVICE_TOGGLE and isinstance(params, MakerStopParams):
            # non-idempotent GET on the daemon side
            return await self._http.get_private(self._ep.path("maker_stop"), retry=False)
        if request.kind is JobKind.FUNDS_SWEEP and isinstance(params, SweepParams):
            return await self._http.post_private(self._ep.path("taker_coinjoin"), params.to_body(), retry=False)
        raise ValueError(f"cannot launch {request.kind.value} with {type(params).__name__}")
