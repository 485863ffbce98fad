from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from common.utils import log_event, now_epoch_ms
from pydantic import BaseModel, ValidationError

from sessionsync.storage import KeyValueStorage

LOGGER = logging.getLogger("aspirely.cache")

T = TypeVar("T")

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

COMPLETION_STATUS_CACHE_KEY = "aspirely_user_completion_status_cache"
PROFILE_CACHE_KEY = "aspirely_user_profile_cache"
JOB_ANALYSES_CACHE_KEY = "aspirely_job_analyses_cache"
LOGO_CACHE_KEY = "aspirely_logo_cached"

COMPLETION_STATUS_TTL_MS = 10 * MINUTE_MS
PROFILE_TTL_MS = 30 * MINUTE_MS
JOB_ANALYSES_TTL_MS = 30 * MINUTE_MS
LOGO_TTL_MS = 24 * HOUR_MS


class CachedEntry(BaseModel, Generic[T]):
    data: T
    timestamp: int
    owner_key: str


class LocalCacheStore:
    """Snapshot cache over a key/value storage.

    An entry is served only while ``now - timestamp < ttl`` and only to the
    owner it was written for. Nothing here raises: unreadable entries are
    treated as misses and failed writes are dropped.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        clock: Callable[[], int] = now_epoch_ms,
    ) -> None:
        self.storage = storage
        self.clock = clock

    def read(self, key: str, owner_key: str, ttl_ms: int) -> CachedEntry[Any] | None:
        try:
            raw = self.storage.get_item(key)
        except Exception as exc:
            log_event(LOGGER, "cache_read_failed", logging.WARNING, key=key, error=str(exc))
            return None
        if raw is None:
            return None

        try:
            entry = CachedEntry[Any].model_validate_json(raw)
        except ValidationError:
            log_event(LOGGER, "cache_entry_corrupt", logging.WARNING, key=key)
            return None

        if entry.owner_key != owner_key:
            return None
        if self.clock() - entry.timestamp >= ttl_ms:
            return None
        return entry

    def write(self, key: str, data: Any, owner_key: str) -> None:
        entry = CachedEntry[Any](data=data, timestamp=self.clock(), owner_key=owner_key)
        try:
            payload = entry.model_dump_json()
        except (TypeError, ValueError) as exc:
            log_event(LOGGER, "cache_entry_unserializable", logging.WARNING, key=key, error=str(exc))
            return
        try:
            self.storage.set_item(key, payload)
        except Exception as exc:
            log_event(LOGGER, "cache_write_failed", logging.WARNING, key=key, error=str(exc))

    def invalidate(self, key: str) -> None:
        try:
            self.storage.remove_item(key)
        except Exception as exc:
            log_event(LOGGER, "cache_invalidate_failed", logging.WARNING, key=key, error=str(exc))


Listener = Callable[[str, Any], None]


class CachedResource(Generic[T]):
    """A cached, owner-scoped view of one backend entity.

    ``initial`` is synchronous so a caller can render the last-known value
    before any network round trip; ``refresh`` fetches, persists and notifies
    subscribers. Overlapping refreshes are not cancelled and the last one to
    finish wins.
    """

    def __init__(
        self,
        store: LocalCacheStore,
        *,
        key: str,
        ttl_ms: int,
        fetch: Callable[[str], Awaitable[T]],
        name: str | None = None,
    ) -> None:
        self.store = store
        self.key = key
        self.ttl_ms = ttl_ms
        self.fetch = fetch
        self.name = name or key
        self._listeners: list[Listener] = []
        # owner_key -> (value, written_at_ms); expires with the same TTL as storage.
        self._current: dict[str, tuple[T, int]] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def initial(self, owner_key: str) -> T | None:
        current = self._current.get(owner_key)
        if current is not None:
            value, written_at = current
            if self.store.clock() - written_at < self.ttl_ms:
                return value
            del self._current[owner_key]
        entry = self.store.read(self.key, owner_key, self.ttl_ms)
        if entry is None:
            return None
        return entry.data

    def is_cached(self, owner_key: str) -> bool:
        return self.store.read(self.key, owner_key, self.ttl_ms) is not None

    async def refresh(self, owner_key: str) -> T:
        value = await self.fetch(owner_key)
        self.publish(owner_key, value)
        return value

    def publish(self, owner_key: str, value: T) -> None:
        self._current = {owner_key: (value, self.store.clock())}
        self.store.write(self.key, value, owner_key)
        log_event(LOGGER, "cache_refreshed", logging.DEBUG, resource=self.name, owner_key=owner_key)
        for listener in list(self._listeners):
            listener(owner_key, value)

    def invalidate(self) -> None:
        self._current.clear()
        self.store.invalidate(self.key)
