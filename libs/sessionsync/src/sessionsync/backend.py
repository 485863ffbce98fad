from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from common.utils import log_event

from sessionsync.errors import BackendError, FailureKind, OperationResult

LOGGER = logging.getLogger("aspirely.backend")

RefreshCallback = Callable[[], Awaitable[str | None]]


def read_token_expiry(token: str) -> float | None:
    """Return the ``exp`` claim of a JWT in epoch seconds, or None if unreadable."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode()))
    except (ValueError, json.JSONDecodeError):
        return None
    if not isinstance(claims, dict):
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return float(exp)
    return None


def build_backend_error(response: httpx.Response) -> BackendError:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    message = str(payload.get("message") or payload.get("error") or f"HTTP {response.status_code}")
    code = payload.get("code")
    kind: FailureKind | None = None
    if response.status_code == 401 or code == "PGRST301":
        kind = FailureKind.AUTH
    elif response.status_code >= 500:
        kind = FailureKind.TRANSIENT
    return BackendError(
        message,
        kind=kind,
        status_code=response.status_code,
        code=str(code) if code is not None else None,
    )


class BackendClient:
    """Authenticated REST client for the hosted database.

    The client never mints credentials. It holds whatever token was last pushed
    through ``set_session`` and, when that token is missing or past its ``exp``
    claim, asks the callback registered with ``on_auth_failure`` for a new one.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._token: str | None = None
        self._auth_failure_callback: RefreshCallback | None = None
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def has_session(self) -> bool:
        return self._token is not None

    def set_session(self, token: str | None) -> bool:
        self._token = token
        log_event(LOGGER, "session_set" if token else "session_cleared", logging.DEBUG)
        return True

    def on_auth_failure(self, callback: RefreshCallback) -> None:
        self._auth_failure_callback = callback

    def headers(self) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _session_expired(self) -> bool:
        if self._token is None:
            return True
        expiry = read_token_expiry(self._token)
        return expiry is not None and expiry <= time.time()

    async def _ensure_session(self) -> None:
        if not self._session_expired() or self._auth_failure_callback is None:
            return
        log_event(LOGGER, "session_expired_detected", logging.INFO)
        await self._auth_failure_callback()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        payload: Any = None,
    ) -> OperationResult[Any]:
        await self._ensure_session()
        request_kwargs: dict[str, Any] = {"headers": self.headers()}
        if params:
            request_kwargs["params"] = params
        if payload is not None:
            request_kwargs["json"] = payload

        response = await self._http.request(
            method,
            f"{self.base_url}{path}",
            **request_kwargs,
        )
        if response.status_code >= 400:
            return OperationResult(error=build_backend_error(response))
        if not response.content:
            return OperationResult(data=None)
        try:
            return OperationResult(data=response.json())
        except ValueError:
            return OperationResult(data=response.text)

    async def select(
        self,
        table: str,
        *,
        filters: dict[str, str] | None = None,
        order: str | None = None,
        columns: str = "*",
    ) -> OperationResult[Any]:
        params = {"select": columns}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        if order:
            params["order"] = order
        return await self.request("GET", f"/rest/v1/{table}", params=params)

    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> OperationResult[Any]:
        return await self.request("POST", f"/rest/v1/rpc/{function}", payload=params or {})

    async def fetch_bytes(self, url: str) -> tuple[bytes, str]:
        response = await self._http.get(url)
        response.raise_for_status()
        return response.content, response.headers.get("content-type", "application/octet-stream")

    async def aclose(self) -> None:
        await self._http.aclose()
