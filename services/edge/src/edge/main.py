from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from contextlib import asynccontextmanager

import httpx
from common.observability import MetricsSnapshot, install_observability
from common.utils import log_event
from fastapi import FastAPI, HTTPException, Request, Response

from edge.cache_storage import UNCACHEABLE_HEADERS, CacheStorage
from edge.router import (
    DEFAULT_CACHE_VERSION,
    DEFAULT_CRITICAL_ASSETS,
    CacheRouter,
    InstallError,
    RoutedResponse,
    Strategy,
)

LOGGER = logging.getLogger("aspirely.edge")

DEFAULT_ORIGIN_URL = "http://localhost:8080"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
# Request headers that belong to the client connection, not the origin request.
DROPPED_REQUEST_HEADERS = frozenset({"host", "content-length", "connection", "accept-encoding"})


def forwardable_headers(request: Request) -> dict[str, str]:
    return {
        name: value
        for name, value in request.headers.items()
        if name.lower() not in DROPPED_REQUEST_HEADERS
    }


def build_origin_url(origin: str, path: str, query: str) -> httpx.URL:
    target = f"{origin}/{path}"
    if query:
        target = f"{target}?{query}"
    return httpx.URL(target)


def to_response(routed: RoutedResponse) -> Response:
    response = Response(
        content=routed.response.content,
        status_code=routed.response.status_code,
        headers=routed.response.headers,
    )
    response.headers["x-edge-strategy"] = routed.strategy.value
    response.headers["x-edge-cache"] = routed.source.value
    return response


def create_app(
    *,
    origin_url: str | None = None,
    critical_assets: Iterable[str] | None = None,
    cache_version: str | None = None,
    storage: CacheStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    resolved_origin = (origin_url or os.getenv("EDGE_ORIGIN_URL", DEFAULT_ORIGIN_URL)).rstrip("/")
    resolved_version = (cache_version or os.getenv("EDGE_CACHE_VERSION", "")).strip() or DEFAULT_CACHE_VERSION
    resolved_assets = tuple(DEFAULT_CRITICAL_ASSETS if critical_assets is None else critical_assets)
    cache_storage = storage if storage is not None else CacheStorage()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = httpx.AsyncClient(timeout=15, transport=transport)
        router = CacheRouter(
            client,
            cache_storage,
            origin=resolved_origin,
            critical_assets=resolved_assets,
            version=resolved_version,
        )
        try:
            await router.install()
        except InstallError as exc:
            log_event(LOGGER, "edge_install_failed", logging.WARNING, error=str(exc))
        await router.activate()
        app.state.router = router
        app.state.client = client
        try:
            yield
        finally:
            await router.drain()
            await client.aclose()

    app = FastAPI(title="Aspirely Edge", version="0.1.0", lifespan=lifespan)
    install_observability(app, LOGGER, outcome_headers=("x-edge-strategy", "x-edge-cache"))

    async def pass_through(request: Request, url: httpx.URL) -> Response:
        try:
            upstream = await request.app.state.client.request(
                request.method,
                url,
                headers=forwardable_headers(request),
                content=await request.body(),
            )
        except httpx.RequestError as exc:
            log_event(LOGGER, "edge_origin_unavailable", logging.WARNING, url=str(url), error=str(exc))
            raise HTTPException(status_code=502, detail="Upstream origin is unavailable") from exc

        response = Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers={
                name: value
                for name, value in upstream.headers.items()
                if name.lower() not in UNCACHEABLE_HEADERS
            },
        )
        response.headers["x-edge-strategy"] = Strategy.PASS_THROUGH.value
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "edge"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(path: str, request: Request) -> Response:
        url = build_origin_url(resolved_origin, path, request.url.query)
        router: CacheRouter = request.app.state.router
        try:
            routed = await router.handle(request.method, url, forwardable_headers(request))
        except httpx.RequestError as exc:
            log_event(LOGGER, "edge_origin_unavailable", logging.WARNING, url=str(url), error=str(exc))
            raise HTTPException(status_code=502, detail="Upstream origin is unavailable") from exc
        if routed is None:
            return await pass_through(request, url)
        return to_response(routed)

    return app


app = create_app()
