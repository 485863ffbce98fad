from __future__ import annotations

import threading

import httpx
from pydantic import BaseModel, Field

# Headers that describe one hop or an encoding httpx has already undone.
UNCACHEABLE_HEADERS = frozenset(
    {
        "connection",
        "content-encoding",
        "content-length",
        "keep-alive",
        "transfer-encoding",
        "upgrade",
    }
)
# Headers that belong to one client and never leave the response they arrived on.
PRIVATE_HEADERS = frozenset({"set-cookie"})


class CachedResponse(BaseModel):
    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    content: bytes = b""

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> CachedResponse:
        headers = {
            name.lower(): value
            for name, value in response.headers.items()
            if name.lower() not in UNCACHEABLE_HEADERS
        }
        return cls(status_code=response.status_code, headers=headers, content=response.content)

    def shareable(self) -> CachedResponse:
        """Copy without the headers that must not be replayed to other clients."""
        headers = {name: value for name, value in self.headers.items() if name not in PRIVATE_HEADERS}
        return self.model_copy(update={"headers": headers})

    def cache_directives(self) -> set[str]:
        value = self.headers.get("cache-control", "")
        return {part.split("=", 1)[0].strip().lower() for part in value.split(",") if part.strip()}


class NamedCache:
    """One named response cache, keyed by absolute request URL."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.RLock()
        self._entries: dict[str, CachedResponse] = {}

    def match(self, url: str) -> CachedResponse | None:
        with self._lock:
            return self._entries.get(url)

    def put(self, url: str, response: CachedResponse) -> None:
        with self._lock:
            self._entries[url] = response

    def delete(self, url: str) -> bool:
        with self._lock:
            return self._entries.pop(url, None) is not None

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)


class CacheStorage:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._caches: dict[str, NamedCache] = {}

    def open(self, name: str) -> NamedCache:
        with self._lock:
            cache = self._caches.get(name)
            if cache is None:
                cache = NamedCache(name)
                self._caches[name] = cache
            return cache

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._caches

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._caches)

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._caches.pop(name, None) is not None
