# wallet/services/snapshot_service.py
from typing import Protocol

from pydantic import ValidationError

from infra.http_client import HttpError, WalletApiError
from utils.logger import logger
from wallet.cancellation import CancellationScope
from wallet.errors import TransportError
from wallet.models import Snapshot
from wallet.schemas import SessionInfo, UtxoList


class SnapshotSource(Protocol):
    async def fetch(self, scope: CancellationScope) -> Snapshot: ...


class SnapshotService:
    """
    Reads the observable state of the maker service and the wallet from jmwalletd.

    - /session            -> service_running, coinjoin_in_progress
    - /wallet/{w}/utxos   -> timelocked_output_count (only when with_outputs=True)

    Reads are idempotent; any transport or schema problem surfaces as TransportError.
    """

    def __init__(self, http_client, endpoints, *, with_outputs: bool = False) -> None:
        self._http = http_client
        self._ep = endpoints
        self._with_outputs = with_outputs

    async def fetch(self, scope: CancellationScope) -> Snapshot:
        scope.raise_if_cancelled()
        session = await self.get_session()
        count = None
        if self._with_outputs:
            scope.raise_if_cancelled()
            count = len((await self.get_utxos()).timelocked())
        snap = Snapshot(
            service_running=session.maker_running,
            coinjoin_in_progress=session.coinjoin_in_progress,
            timelocked_output_count=count,
        )
        logger.debug(f"snapshot {snap}")
        return snap

    async def get_session(self) -> SessionInfo:
        payload = await self._read(self._http.get_public(self._ep.path("session")), "session")
        try:
            return SessionInfo.model_validate(payload)
        except ValidationError as e:
            raise TransportError("malformed session response", errors=e.error_count()) from e

    async def get_utxos(self) -> UtxoList:
        payload = await self._read(self._http.get_private(self._ep.path("wallet_utxos")), "utxos")
        try:
            return UtxoList.model_validate(payload)
        except ValidationError as e:
            raise TransportError("malformed utxos response", errors=e.error_count()) from e

    @staticmethod
    async def _read(aw, what: str) -> dict:
        try:
            return await aw
        except HttpError as e:
            raise TransportError(f"{what} read failed: {e.message}", status=e.status) from e
        except WalletApiError as e:
            # a refused read leaves the state unobservable, same as a network error
            raise TransportError(f"{what} read refused: {e.message}", status=e.status) from e
