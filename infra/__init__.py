# infra/__init__.py
from __future__ import annotations

import logging
from typing import Protocol, Mapping, Any, Optional, Dict

from infra.http_client import HttpClient, HttpError, WalletApiError

# ========== 1) port: services depend on this, not on the concrete HttpClient ==========
class HttpPort(Protocol):
    async def get_public(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]: ...
    async def get_private(self, path: str, params: Optional[Mapping[str, Any]] = None,
                          *, retry: bool = True) -> Dict[str, Any]: ...
    async def post_private(self, path: str, json_body: Mapping[str, Any],
                           *, retry: bool = True) -> Dict[str, Any]: ...


# ========== 2) container: create / close ==========
class HttpContainer:
    """
    Owns the HttpClient lifecycle.
    - The composition root (app entry point) holds it.
    - Services receive container.http.
    """
    def __init__(self, http: HttpClient) -> None:
        self.http = http

    @classmethod
    async def start(cls,
                    cfg: Mapping[str, Any],
                    logger: Optional[logging.Logger] = None,
                    token: Optional[str] = None,
                    *,
                    probe: bool = True,
                    ) -> "HttpContainer":
        http = HttpClient(cfg, logger=logger, token=token)
        if probe and not await http_healthcheck(http):
            http.log.warning("jmwalletd health probe failed at startup")
        return cls(http)

    async def stop(self) -> None:
        await self.http.close()


# ========== 3) health check ==========
async def http_healthcheck(http: HttpPort) -> bool:
    try:
        await http.get_public("/api/v1/session")
        return True
    except (HttpError, WalletApiError):
        return False


__all__ = ["HttpClient", "HttpContainer", "HttpError", "HttpPort", "WalletApiError", "http_healthcheck"]
