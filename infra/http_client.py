# infra/http_client.py
from __future__ import annotations

import aiohttp
import asyncio
import json
import random
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode
import logging
from utils.logger import logger

JSON_SEPARATORS = (",", ":")

class HttpError(Exception):
    """Transport or protocol failure: network error, timeout, unreadable response."""
    def __init__(self, status: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message
        self.payload = payload or {}


class WalletApiError(Exception):
    """Explicit refusal by jmwalletd: an error status with a JSON `message` body."""
    def __init__(self, status: int, message: str, payload: dict | None = None):
        self.status = status
        self.message = message
        self.payload = payload or {}
        super().__init__(f"jmwalletd status={status}, message={message}")


def _json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=JSON_SEPARATORS, ensure_ascii=False)

def _build_query(params: Optional[Mapping[str, Any]]) -> str:
    if not params:
        return ""
    return "?" + urlencode(params, doseq=True, safe=":/")

def _mask(s: Optional[str]) -> str:
    if not s:
        return ""
    if len(s) <= 8:
        return "*" * len(s)
    return s[:4] + "*" * (len(s) - 8) + s[-4:]

def _error_message(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        msg = payload.get("message")
        if isinstance(msg, str) and msg:
            return msg
    return None

class HttpClient:
    def __init__(self,
                 cfg: Mapping[str, Any],
                 logger: Optional[logging.Logger] = None,
                 token: Optional[str] = None,
                 *,
                 timeout_ms: Optional[int] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 ) -> None:
        self.cfg = cfg
        self.log = logger or logging.getLogger("HttpClient")
        self.session = session
        self._owned_session = session is None

        jm_cfg = cfg.get("jmwalletd", {})
        self.base_url = str(jm_cfg.get("base_url", "https://127.0.0.1:28183")).rstrip("/")
        self.verify_ssl: bool = bool(jm_cfg.get("verify_ssl", True))

        # bearer token returned by /wallet/{name}/unlock
        self.token = token if token is not None else (jm_cfg.get("token") or None)

        timeouts_cfg = cfg.get("timeouts", {})
        retries_cfg = cfg.get("retries", {})
        self.timeout_ms = int(timeout_ms or timeouts_cfg.get("rest_ms", 10000))
        self.max_attempts = int(retries_cfg.get("rest_max_attempts", 3))
        self.backoff_ms = int(retries_cfg.get("backoff_ms", 200))

        if self.session is None:
            self.session = self._new_session()

        self.log.debug(
            f"HttpClient init base_url={self.base_url} verify_ssl={self.verify_ssl} token={_mask(self.token)}"
        )

    def _new_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0)
        connector = aiohttp.TCPConnector(ssl=None if self.verify_ssl else False)
        return aiohttp.ClientSession(timeout=timeout, connector=connector, raise_for_status=False, trust_env=True)

    # ---- async context manager ----------------------------------------------------
    async def __aenter__(self) -> "HttpClient":
        if self._owned_session and (self.session is None or self.session.closed):
            self.session = self._new_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owned_session and self.session is not None and not self.session.closed:
            await self.session.close()

    def _auth_headers(self) -> Dict[str, str]:
        if not self.token:
            raise HttpError(401, "missing wallet token")
        return {"Authorization": f"Bearer {self.token}"}

    async def request(
            self,
            method: str,
            path: str,
            *,
            params: Optional[Mapping[str, Any]] = None,
            json_body: Optional[Mapping[str, Any]] = None,
            auth: bool = False,
            headers: Optional[Mapping[str, str]] = None,
            timeout_ms: Optional[int] = None,
            retry: bool = True,
        ) -> Dict[str, Any]:
        """
        Single entry point for jmwalletd REST calls.

        - path: starts with "/api/v1/..."
        - auth: send the wallet bearer token
        - retry: retry network errors / 5xx / 429 with exponential backoff.
          Job launches pass retry=False so a non-idempotent call is issued once.

        Raises WalletApiError when the daemon answers with an error status and a
        readable `message`, HttpError for every other failure.
        """
        assert path.startswith("/api/"), "path must start with /api/"
        method = method.upper()
        url = self.base_url + path + _build_query(params)
        body_str = _json_dumps_compact(json_body) if json_body is not None else ""
        req_headers = {
            "Content-Type": "application/json", "Accept": "application/json"
        }
        if headers:
            req_headers.update(headers)
        if auth:
            req_headers.update(self._auth_headers())

        extra: Dict[str, Any] = {}
        if timeout_ms:
            extra["timeout"] = aiohttp.ClientTimeout(total=timeout_ms / 1000.0)

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.session.request(
                    method,
                    url,
                    data=body_str if body_str else None,
                    headers=req_headers,
                    **extra,
                ) as resp:
                    text = await resp.text()
                    status = resp.status
                    if status >= 400:
                        if retry and (status >= 500 or status == 429) and attempt < self.max_attempts:
                            await self._sleep_backoff(attempt)
                            continue
                        try:
                            err_payload = json.loads(text) if text else {}
                        except json.JSONDecodeError:
                            err_payload = {}
                        message = _error_message(err_payload)
                        if message is not None:
                            raise WalletApiError(status, message, err_payload)
                        raise HttpError(status, text[:256] or resp.reason or "error")

                    try:
                        payload = json.loads(text) if text else {}
                    except json.JSONDecodeError:
                        raise HttpError(status, f"invalid json: {text[:256]}")
                    if not isinstance(payload, dict):
                        raise HttpError(status, f"unexpected payload type: {type(payload).__name__}")
                    return payload
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if retry and attempt < self.max_attempts:
                    logger.warning(f"Network error: {e!r} when requesting {method} {path}, retrying...")
                    await self._sleep_backoff(attempt)
                    continue
                raise HttpError(599, f"Network error: {e!r}") from e
            except (WalletApiError, HttpError):
                raise

    async def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_ms * (2 ** (attempt - 1))
        jitter = random.randint(0, self.backoff_ms)
        await asyncio.sleep((base + jitter) / 1000.0)

    # ---- convenience wrappers -----------------------------------------------------
    async def get_public(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", path, params=params, auth=False)

    async def get_private(self, path: str, params: Optional[Mapping[str, Any]] = None,
                          *, retry: bool = True) -> Dict[str, Any]:
        return await self.request("GET", path, params=params, auth=True, retry=retry)

    async def post_private(self, path: str, json_body: Mapping[str, Any],
                           *, retry: bool = True) -> Dict[str, Any]:
        return await self.request("POST", path, json_body=json_body, auth=True, retry=retry)
