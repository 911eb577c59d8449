# wallet/services/endpoints.py
from dataclasses import dataclass
from urllib.parse import quote

@dataclass
class Endpoints:
    # target wallet file, e.g. "Satoshi.jmdat"
    wallet_name: str

    # jmwalletd REST v1 paths; {wallet} is filled from wallet_name
    session: str = "/api/v1/session"
    wallet_utxos: str = "/api/v1/wallet/{wallet}/utxos"
    maker_start: str = "/api/v1/wallet/{wallet}/maker/start"
    maker_stop: str = "/api/v1/wallet/{wallet}/maker/stop"
    taker_coinjoin: str = "/api/v1/wallet/{wallet}/taker/coinjoin"
    config_get: str = "/api/v1/wallet/{wallet}/configget"

    def path(self, name: str) -> str:
        return getattr(self, name).format(wallet=quote(self.wallet_name, safe=""))


def wallet_file_name(name: str) -> str:
    return name if name.endswith(".jmdat") else f"{name}.jmdat"


def make_endpoints_from_cfg(cfg: dict, wallet_name: str | None = None) -> Endpoints:
    try:
        name = wallet_name or cfg["jmwalletd"]["wallet_name"]
    except KeyError as e:
        raise ValueError(f"Invalid cfg missing key: {e}") from e
    if not name:
        raise ValueError("jmwalletd.wallet_name is empty")
    return Endpoints(wallet_name=wallet_file_name(name))
