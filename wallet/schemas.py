# wallet/schemas.py
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, StrictBool, StrictInt


class SessionInfo(BaseModel):
    """GET /api/v1/session"""
    model_config = ConfigDict(extra="ignore")

    session: StrictBool
    maker_running: StrictBool
    coinjoin_in_progress: StrictBool
    wallet_name: Optional[str] = None


class Utxo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    utxo: str
    value: StrictInt
    mixdepth: Optional[int] = None
    confirmations: Optional[int] = None
    frozen: Optional[bool] = None
    address: Optional[str] = None
    locktime: Optional[str] = None       # present on fidelity bond outputs only

    @property
    def is_timelocked(self) -> bool:
        return bool(self.locktime)


class UtxoList(BaseModel):
    """GET /api/v1/wallet/{wallet}/utxos"""
    model_config = ConfigDict(extra="ignore")

    utxos: List[Utxo] = []

    def timelocked(self) -> List[Utxo]:
        return [u for u in self.utxos if u.is_timelocked]


class ConfigValue(BaseModel):
    """POST /api/v1/wallet/{wallet}/configget"""
    model_config = ConfigDict(extra="ignore")

    configvalue: Any = None

