"""Per-request caching strategies for the edge gateway.

Requests are classified by path, in order: images and fonts are served
cache-first from the static cache, stylesheets and scripts are served
stale-while-revalidate from the dynamic cache, and any other same-origin GET
goes network-first through the dynamic cache. Everything else passes through.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

import httpx
from common.utils import log_event

from edge.cache_storage import CachedResponse, CacheStorage, NamedCache

LOGGER = logging.getLogger("aspirely.edge")

DEFAULT_CACHE_PREFIX = "aspirely"
DEFAULT_CACHE_VERSION = "v1"
DEFAULT_CRITICAL_ASSETS = (
    "/",
    "/manifest.json",
    "https://fonts.googleapis.com/css2?family=Inter:wght@300;400;500;600;700&display=swap",
)

IMAGE_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp|avif|svg)$", re.IGNORECASE)
FONT_PATTERN = re.compile(r"\.(woff|woff2|eot|ttf|otf)$", re.IGNORECASE)
ASSET_PATTERN = re.compile(r"\.(css|js)$", re.IGNORECASE)
NO_STORE_DIRECTIVES = frozenset({"private", "no-store"})


class Strategy(str, Enum):
    CACHE_FIRST = "cache-first"
    STALE_WHILE_REVALIDATE = "stale-while-revalidate"
    NETWORK_FIRST = "network-first"
    PASS_THROUGH = "pass-through"


class CacheSource(str, Enum):
    HIT = "hit"
    MISS = "miss"
    OFFLINE = "offline"


class InstallError(RuntimeError):
    pass


@dataclass(frozen=True)
class RoutedResponse:
    response: CachedResponse
    strategy: Strategy
    source: CacheSource


def synthetic_response(status_code: int, message: str) -> CachedResponse:
    return CachedResponse(
        status_code=status_code,
        headers={"content-type": "text/plain; charset=utf-8"},
        content=message.encode(),
    )


def same_origin(url: httpx.URL, origin: httpx.URL) -> bool:
    return (url.scheme, url.host, url.port) == (origin.scheme, origin.host, origin.port)


def is_storable(response: CachedResponse, request_headers: Mapping[str, str] | None = None) -> bool:
    """Whether a shared cache may keep ``response`` for later clients.

    Responses to authorized requests are kept only when marked public.
    """
    if response.status_code != 200:
        return False
    directives = response.cache_directives()
    if directives & NO_STORE_DIRECTIVES:
        return False
    authorized = any(name.lower() == "authorization" for name in (request_headers or {}))
    return not authorized or "public" in directives


class CacheRouter:
    def __init__(
        self,
        client: httpx.AsyncClient,
        storage: CacheStorage,
        *,
        origin: str,
        critical_assets: Iterable[str] = DEFAULT_CRITICAL_ASSETS,
        version: str = DEFAULT_CACHE_VERSION,
        prefix: str = DEFAULT_CACHE_PREFIX,
    ) -> None:
        self.client = client
        self.storage = storage
        self.origin = httpx.URL(origin.rstrip("/"))
        self.critical_assets = tuple(critical_assets)
        self.static_cache_name = f"{prefix}-static-{version}"
        self.dynamic_cache_name = f"{prefix}-dynamic-{version}"
        self._background: set[asyncio.Task[None]] = set()

    @property
    def cache_names(self) -> tuple[str, str]:
        return self.static_cache_name, self.dynamic_cache_name

    def resolve(self, asset: str) -> httpx.URL:
        if asset.startswith("/"):
            return httpx.URL(f"{self.origin}{asset}")
        return httpx.URL(asset)

    async def install(self) -> None:
        """Pre-populate the static cache with every critical asset, or with none."""
        urls = [self.resolve(asset) for asset in self.critical_assets]
        results = await asyncio.gather(*(self.client.get(url) for url in urls), return_exceptions=True)

        fetched: list[tuple[str, CachedResponse]] = []
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                raise InstallError(f"Failed to fetch critical asset {url}") from result
            if result.status_code != 200:
                raise InstallError(f"Critical asset {url} returned HTTP {result.status_code}")
            fetched.append((str(url), CachedResponse.from_httpx(result).shareable()))

        cache = self.storage.open(self.static_cache_name)
        for url, response in fetched:
            cache.put(url, response)
        log_event(LOGGER, "edge_installed", cache=self.static_cache_name, assets=len(fetched))

    async def activate(self) -> list[str]:
        removed = [name for name in self.storage.keys() if name not in self.cache_names]
        for name in removed:
            self.storage.delete(name)
        log_event(LOGGER, "edge_activated", current=list(self.cache_names), removed=removed)
        return removed

    def classify(self, url: httpx.URL) -> Strategy:
        path = url.path
        if IMAGE_PATTERN.search(path) or FONT_PATTERN.search(path):
            return Strategy.CACHE_FIRST
        if ASSET_PATTERN.search(path):
            return Strategy.STALE_WHILE_REVALIDATE
        if same_origin(url, self.origin):
            return Strategy.NETWORK_FIRST
        return Strategy.PASS_THROUGH

    async def handle(
        self,
        method: str,
        url: httpx.URL,
        headers: Mapping[str, str] | None = None,
    ) -> RoutedResponse | None:
        """Serve ``url`` through its caching strategy, or return None to pass it through.

        ``headers`` are forwarded to the origin on every fetch. Transport errors
        from a stale-while-revalidate miss propagate to the caller.
        """
        if method.upper() != "GET":
            return None
        strategy = self.classify(url)
        if strategy is Strategy.CACHE_FIRST:
            return await self.cache_first(url, self.storage.open(self.static_cache_name), headers)
        if strategy is Strategy.STALE_WHILE_REVALIDATE:
            return await self.stale_while_revalidate(url, self.storage.open(self.dynamic_cache_name), headers)
        if strategy is Strategy.NETWORK_FIRST:
            return await self.network_first(url, self.storage.open(self.dynamic_cache_name), headers)
        return None

    async def cache_first(
        self,
        url: httpx.URL,
        cache: NamedCache,
        headers: Mapping[str, str] | None = None,
    ) -> RoutedResponse:
        cached = cache.match(str(url))
        if cached is not None:
            return RoutedResponse(cached, Strategy.CACHE_FIRST, CacheSource.HIT)
        try:
            response = await self._fetch_and_store(url, cache, headers)
        except httpx.RequestError as exc:
            log_event(LOGGER, "edge_fetch_failed", logging.WARNING, url=str(url), error=str(exc))
            return RoutedResponse(
                synthetic_response(408, "Network error"),
                Strategy.CACHE_FIRST,
                CacheSource.OFFLINE,
            )
        return RoutedResponse(response, Strategy.CACHE_FIRST, CacheSource.MISS)

    async def stale_while_revalidate(
        self,
        url: httpx.URL,
        cache: NamedCache,
        headers: Mapping[str, str] | None = None,
    ) -> RoutedResponse:
        cached = cache.match(str(url))
        if cached is None:
            response = await self._fetch_and_store(url, cache, headers)
            return RoutedResponse(response, Strategy.STALE_WHILE_REVALIDATE, CacheSource.MISS)

        task = asyncio.create_task(self._revalidate(url, cache, headers))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return RoutedResponse(cached, Strategy.STALE_WHILE_REVALIDATE, CacheSource.HIT)

    async def network_first(
        self,
        url: httpx.URL,
        cache: NamedCache,
        headers: Mapping[str, str] | None = None,
    ) -> RoutedResponse:
        try:
            response = await self._fetch_and_store(url, cache, headers)
        except httpx.RequestError as exc:
            log_event(LOGGER, "edge_fetch_failed", logging.WARNING, url=str(url), error=str(exc))
            cached = cache.match(str(url))
            if cached is not None:
                return RoutedResponse(cached, Strategy.NETWORK_FIRST, CacheSource.HIT)
            return RoutedResponse(
                synthetic_response(503, "Offline"),
                Strategy.NETWORK_FIRST,
                CacheSource.OFFLINE,
            )
        return RoutedResponse(response, Strategy.NETWORK_FIRST, CacheSource.MISS)

    async def drain(self) -> None:
        """Wait for every pending background revalidation."""
        while self._background:
            pending = list(self._background)
            await asyncio.gather(*pending)
            self._background.difference_update(pending)

    async def _fetch_and_store(
        self,
        url: httpx.URL,
        cache: NamedCache,
        headers: Mapping[str, str] | None = None,
    ) -> CachedResponse:
        response = CachedResponse.from_httpx(await self.client.get(url, headers=dict(headers or {})))
        if is_storable(response, headers):
            cache.put(str(url), response.shareable())
        return response

    async def _revalidate(
        self,
        url: httpx.URL,
        cache: NamedCache,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        try:
            await self._fetch_and_store(url, cache, headers)
        except httpx.RequestError as exc:
            log_event(LOGGER, "edge_revalidate_failed", logging.WARNING, url=str(url), error=str(exc))
