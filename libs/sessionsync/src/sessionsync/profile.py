from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from sessionsync.cache import PROFILE_CACHE_KEY, PROFILE_TTL_MS, CachedResource, LocalCacheStore

Profile = dict[str, Any]


class ProfileCache(CachedResource[Profile | None]):
    """The cached user profile; subscribers are told about every new snapshot."""

    def __init__(
        self,
        store: LocalCacheStore,
        fetch: Callable[[str], Awaitable[Profile | None]],
    ) -> None:
        super().__init__(
            store,
            key=PROFILE_CACHE_KEY,
            ttl_ms=PROFILE_TTL_MS,
            fetch=fetch,
            name="user_profile",
        )

    async def refetch(self, owner_key: str) -> Profile | None:
        return await self.refresh(owner_key)

    def apply_update(self, owner_key: str, updates: Profile) -> Profile | None:
        current = self.initial(owner_key)
        if current is None:
            return None
        merged = {**current, **updates}
        self.publish(owner_key, merged)
        return merged
