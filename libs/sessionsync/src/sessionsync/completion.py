from __future__ import annotations

import logging
from typing import Any

from common.utils import has_text, log_event, now_utc_iso
from pydantic import BaseModel, ValidationError

from sessionsync.cache import COMPLETION_STATUS_CACHE_KEY, COMPLETION_STATUS_TTL_MS, LocalCacheStore
from sessionsync.profile import ProfileCache

LOGGER = logging.getLogger("aspirely.completion")


class CompletionStatus(BaseModel):
    has_resume: bool = False
    has_bio: bool = False
    is_complete: bool = False
    last_checked: str | None = None


def compute_completion(profile: dict[str, Any] | None) -> CompletionStatus:
    if not profile:
        return CompletionStatus(last_checked=now_utc_iso())
    has_resume = has_text(profile.get("resume"))
    has_bio = has_text(profile.get("bio"))
    return CompletionStatus(
        has_resume=has_resume,
        has_bio=has_bio,
        is_complete=has_resume and has_bio,
        last_checked=now_utc_iso(),
    )


class CompletionStatusAggregator:
    """Derives "profile complete" from the cached profile and caches the result.

    The aggregator listens to the profile cache and recomputes synchronously on
    every new profile snapshot, so it never issues a request of its own.
    """

    def __init__(self, profiles: ProfileCache, store: LocalCacheStore) -> None:
        self.profiles = profiles
        self.store = store
        self._unsubscribe = profiles.subscribe(self._on_profile_changed)

    def close(self) -> None:
        self._unsubscribe()

    def status(self, owner_key: str) -> CompletionStatus:
        entry = self.store.read(COMPLETION_STATUS_CACHE_KEY, owner_key, COMPLETION_STATUS_TTL_MS)
        if entry is not None:
            try:
                return CompletionStatus.model_validate(entry.data)
            except ValidationError:
                log_event(LOGGER, "completion_cache_corrupt", logging.WARNING, owner_key=owner_key)

        profile = self.profiles.initial(owner_key)
        if profile is None:
            return CompletionStatus()
        return self._recompute(owner_key, profile)

    async def refetch_status(self, owner_key: str) -> None:
        self.store.invalidate(COMPLETION_STATUS_CACHE_KEY)
        await self.profiles.refetch(owner_key)

    def _on_profile_changed(self, owner_key: str, profile: dict[str, Any] | None) -> None:
        self._recompute(owner_key, profile)

    def _recompute(self, owner_key: str, profile: dict[str, Any] | None) -> CompletionStatus:
        status = compute_completion(profile)
        self.store.write(COMPLETION_STATUS_CACHE_KEY, status.model_dump(), owner_key)
        log_event(
            LOGGER,
            "completion_recomputed",
            logging.DEBUG,
            owner_key=owner_key,
            is_complete=status.is_complete,
        )
        return status
