"""Keeps the backend client's credential in step with the identity provider."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol

from common.utils import log_event

LOGGER = logging.getLogger("aspirely.bridge")

DEFAULT_SYNC_DEBOUNCE_SECONDS = 0.1
DEFAULT_TOKEN_TEMPLATE = "supabase"

RefreshFunction = Callable[[], Awaitable[str | None]]


class IdentityProvider(Protocol):
    async def get_token(self, *, template: str | None = None) -> str | None: ...


class SessionSlot(Protocol):
    def set_session(self, token: str | None) -> bool: ...

    def on_auth_failure(self, callback: RefreshFunction) -> None: ...


class BridgeState(str, Enum):
    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"


class TokenBridge:
    def __init__(
        self,
        client: SessionSlot,
        *,
        debounce_seconds: float = DEFAULT_SYNC_DEBOUNCE_SECONDS,
    ) -> None:
        self.client = client
        self.debounce_seconds = debounce_seconds
        self.state = BridgeState.UNSYNCED
        self._refresh_function: RefreshFunction | None = None
        self._generation = 0
        self._pending: asyncio.Future[bool] | None = None
        self._refresh_task: asyncio.Task[str | None] | None = None

    def set_refresh_function(self, refresh_function: RefreshFunction) -> None:
        self._refresh_function = refresh_function
        self.client.on_auth_failure(self.refresh)

    def bind_identity_provider(
        self,
        provider: IdentityProvider,
        *,
        template: str = DEFAULT_TOKEN_TEMPLATE,
    ) -> None:
        async def mint() -> str | None:
            return await provider.get_token(template=template)

        self.set_refresh_function(mint)

    async def sync(self, token: str | None) -> bool:
        """Push ``token`` after the debounce window; calls inside the window coalesce.

        Every caller whose call was superseded receives the acknowledgement of
        the token that was finally pushed.
        """
        self._generation += 1
        generation = self._generation
        if self._pending is None or self._pending.done():
            self._pending = asyncio.get_running_loop().create_future()
        pending = self._pending
        if token is not None:
            self.state = BridgeState.SYNCING

        await asyncio.sleep(self.debounce_seconds)
        if generation == self._generation:
            pending.set_result(self._push(token))
        return await asyncio.shield(pending)

    def sign_out(self) -> None:
        self._generation += 1
        self._push(None)
        if self._pending is not None and not self._pending.done():
            # Syncs still inside the debounce window lose to the sign-out.
            self._pending.set_result(False)

    async def refresh(self) -> str | None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh())
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> str | None:
        if self._refresh_function is None:
            log_event(LOGGER, "token_refresh_unavailable", logging.WARNING)
            return None
        previous = self.state
        self.state = BridgeState.SYNCING
        try:
            token = await self._refresh_function()
        except Exception as exc:
            self.state = BridgeState.UNSYNCED
            log_event(LOGGER, "token_refresh_failed", logging.WARNING, error=str(exc))
            return None
        if not token:
            self.state = BridgeState.UNSYNCED
            log_event(LOGGER, "token_refresh_empty", logging.INFO, previous_state=previous.value)
            return None
        if not self._push(token):
            return None
        return token

    def _push(self, token: str | None) -> bool:
        try:
            acknowledged = self.client.set_session(token)
        except Exception as exc:
            self.state = BridgeState.UNSYNCED
            log_event(LOGGER, "token_sync_failed", logging.WARNING, error=str(exc))
            return False

        if token is None:
            self.state = BridgeState.UNSYNCED
            log_event(LOGGER, "token_cleared", logging.INFO)
            return acknowledged
        self.state = BridgeState.SYNCED if acknowledged else BridgeState.UNSYNCED
        log_event(LOGGER, "token_synced", logging.DEBUG, acknowledged=acknowledged)
        return acknowledged
