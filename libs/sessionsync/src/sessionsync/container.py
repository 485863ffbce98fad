"""Composition root for the client data layer.

One ``SessionContainer`` is built per process. Application entry points reach
it through ``get_container``; everything below receives its collaborators
explicitly.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx
from common.utils import log_event

from sessionsync.backend import BackendClient
from sessionsync.bridge import IdentityProvider, TokenBridge
from sessionsync.cache import (
    COMPLETION_STATUS_CACHE_KEY,
    JOB_ANALYSES_CACHE_KEY,
    JOB_ANALYSES_TTL_MS,
    LOGO_CACHE_KEY,
    LOGO_TTL_MS,
    CachedResource,
    LocalCacheStore,
)
from sessionsync.completion import CompletionStatusAggregator
from sessionsync.profile import Profile, ProfileCache
from sessionsync.retry import AuthenticatedRequestWrapper
from sessionsync.settings import SessionSettings
from sessionsync.storage import SafeStorage, SqliteStorage

LOGGER = logging.getLogger("aspirely.container")
PUBLIC_OWNER_KEY = "public"


class SessionContainer:
    def __init__(
        self,
        settings: SessionSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        store: LocalCacheStore | None = None,
    ) -> None:
        self.settings = settings
        self.sqlite_storage: SqliteStorage | None = None
        if store is None:
            if settings.storage_path:
                self.sqlite_storage = SqliteStorage(
                    settings.storage_path,
                    quota_bytes=settings.storage_quota_bytes,
                )
            store = LocalCacheStore(SafeStorage(self.sqlite_storage))
        self.store = store

        self.backend = BackendClient(settings.backend_url, settings.backend_key, transport=transport)
        self.bridge = TokenBridge(self.backend, debounce_seconds=settings.sync_debounce)
        self.requests = AuthenticatedRequestWrapper(
            self.bridge,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            retry_transient=settings.retry_transient,
        )
        self.profiles = ProfileCache(self.store, self._fetch_profile)
        self.job_analyses: CachedResource[list[dict[str, Any]]] = CachedResource(
            self.store,
            key=JOB_ANALYSES_CACHE_KEY,
            ttl_ms=JOB_ANALYSES_TTL_MS,
            fetch=self._fetch_job_analyses,
            name="job_analyses",
        )
        self.logo: CachedResource[str] = CachedResource(
            self.store,
            key=LOGO_CACHE_KEY,
            ttl_ms=LOGO_TTL_MS,
            fetch=self._fetch_logo,
            name="logo",
        )
        self.completion = CompletionStatusAggregator(self.profiles, self.store)

    def bind_identity_provider(self, provider: IdentityProvider) -> None:
        self.bridge.bind_identity_provider(provider, template=self.settings.token_template)

    async def sign_in(self, provider: IdentityProvider) -> bool:
        self.bind_identity_provider(provider)
        try:
            token = await provider.get_token(template=self.settings.token_template)
        except Exception as exc:
            # The caller keeps rendering signed-out; the bridge stays unsynced.
            log_event(LOGGER, "sign_in_token_failed", logging.WARNING, error=str(exc))
            return False
        if token is None:
            log_event(LOGGER, "sign_in_without_token", logging.WARNING)
            return False
        return await self.bridge.sync(token)

    def sign_out(self) -> None:
        self.bridge.sign_out()
        self.profiles.invalidate()
        self.job_analyses.invalidate()
        self.store.invalidate(COMPLETION_STATUS_CACHE_KEY)

    async def _fetch_profile(self, owner_key: str) -> Profile | None:
        rows = await self.requests.execute(
            lambda: self.backend.select("user_profile", filters={"user_id": owner_key}),
            "fetch user profile",
        )
        if not rows:
            return None
        return rows[0]

    async def _fetch_job_analyses(self, owner_key: str) -> list[dict[str, Any]]:
        rows = await self.requests.execute(
            lambda: self.backend.select(
                "job_analyses",
                filters={"user_id": owner_key},
                order="created_at.desc",
            ),
            "fetch job analyses",
        )
        return list(rows or [])

    async def _fetch_logo(self, owner_key: str) -> str:
        del owner_key
        content, content_type = await self.backend.fetch_bytes(self.settings.logo_url)
        encoded = base64.b64encode(content).decode()
        return f"data:{content_type};base64,{encoded}"

    async def logo_url(self) -> str:
        cached = self.logo.initial(PUBLIC_OWNER_KEY)
        if cached is not None:
            return cached
        try:
            return await self.logo.refresh(PUBLIC_OWNER_KEY)
        except httpx.HTTPError as exc:
            log_event(LOGGER, "logo_cache_failed", logging.WARNING, error=str(exc))
            return self.settings.logo_url

    async def aclose(self) -> None:
        self.completion.close()
        await self.backend.aclose()
        if self.sqlite_storage is not None:
            self.sqlite_storage.close()


_container: SessionContainer | None = None


def get_container(settings: SessionSettings | None = None) -> SessionContainer:
    global _container
    if _container is None:
        _container = SessionContainer(settings or SessionSettings.from_env())
    return _container


async def reset_container() -> None:
    global _container
    if _container is not None:
        await _container.aclose()
    _container = None
