from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Iterable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from common.utils import log_event, now_utc_iso

STATUS_BUCKETS = ("2xx", "4xx", "5xx")


class EndpointStats(BaseModel):
    count: int = 0
    status: dict[str, int] = Field(default_factory=lambda: dict.fromkeys(STATUS_BUCKETS, 0))
    latency_ms_sum: float = 0.0
    latency_ms_avg: float = 0.0
    # "<label>=<value>" -> count, e.g. "x-edge-cache=hit" or "upstream_status=200".
    outcomes: dict[str, int] = Field(default_factory=dict)


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, EndpointStats]


class MetricsStore:
    """Per-endpoint request counters plus labelled service outcomes."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, EndpointStats] = {}

    @staticmethod
    def endpoint_key(method: str, path: str) -> str:
        return f"{method} {path}"

    def _endpoint(self, key: str) -> EndpointStats:
        return self._endpoints.setdefault(key, EndpointStats())

    def observe(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
        outcomes: dict[str, str] | None = None,
    ) -> None:
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            stats = self._endpoint(self.endpoint_key(method, path))
            stats.count += 1
            if bucket in stats.status:
                stats.status[bucket] += 1
            stats.latency_ms_sum += duration_ms
            stats.latency_ms_avg = stats.latency_ms_sum / stats.count
            for label, value in (outcomes or {}).items():
                self._count(stats, label, value)

    def record_outcome(self, *, method: str, path: str, label: str, value: object) -> None:
        with self._lock:
            self._count(self._endpoint(self.endpoint_key(method, path)), label, value)

    @staticmethod
    def _count(stats: EndpointStats, label: str, value: object) -> None:
        name = f"{label}={value}"
        stats.outcomes[name] = stats.outcomes.get(name, 0) + 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: stats.model_copy(deep=True) for key, stats in self._endpoints.items()},
            )


def install_observability(
    app: FastAPI,
    logger: logging.Logger,
    *,
    outcome_headers: Iterable[str] = (),
) -> MetricsStore:
    """Attach request-id propagation, per-endpoint metrics and access logging to ``app``.

    Any of ``outcome_headers`` present on a response is counted as an outcome
    of its endpoint. Handlers may add their own through
    ``app.state.metrics.record_outcome``.
    """
    metrics = MetricsStore()
    app.state.metrics = metrics
    tracked = tuple(name.lower() for name in outcome_headers)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()
        fields = {"request_id": request_id, "method": request.method, "path": request.url.path}

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            log_event(
                logger,
                "request_complete",
                logging.ERROR,
                **fields,
                status_code=500,
                duration_ms=round(duration_ms, 3),
                error=str(exc),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        outcomes = {name: response.headers[name] for name in tracked if name in response.headers}
        metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            outcomes=outcomes,
        )
        response.headers["x-request-id"] = request_id
        log_event(
            logger,
            "request_complete",
            **fields,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 3),
            source_ip=request.client.host if request.client else None,
            **outcomes,
        )
        return response

    return metrics
