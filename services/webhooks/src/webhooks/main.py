from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from typing import Any

import httpx
from common.observability import MetricsSnapshot, install_observability
from common.utils import log_event
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from webhooks.repository import (
    CreditAccountNotFoundError,
    CreditsRepository,
    CreditTransaction,
    FeatureRecord,
    FeatureRecordCreate,
    UserCredits,
)

LOGGER = logging.getLogger("aspirely.webhooks")

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "aspirely", "webhooks.sqlite3")

WEBHOOK_URL_ENV_VARS = {
    "job_guide": "N8N_JG_WEBHOOK_URL",
    "cover_letter": "N8N_CL_WEBHOOK_URL",
    "linkedin_post": "N8N_LINKEDIN_WEBHOOK_URL",
    "company_analysis": "N8N_COMPANY_WEBHOOK_URL",
    "interview_prep": "N8N_INTERVIEW_WEBHOOK_URL",
}

FEATURE_COSTS = {
    "job_analysis": 1.0,
    "company_analysis": 3.0,
    "interview_prep": 2.0,
    "linkedin_post": 3.0,
    "linkedin_image": 1.5,
    "job_alert_execution": 1.5,
    "resume_pdf": 2.0,
}


class RouteWebhookResponse(BaseModel):
    status: str
    webhook_type: str
    upstream_status: int


class DeductRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=128)


class DeductResponse(BaseModel):
    success: bool
    feature_used: str
    credits_deducted: float
    user_id: str
    record_id: str
    previous_balance: float
    remaining_balance: float


class SetBalanceRequest(BaseModel):
    balance: float = Field(..., ge=0)


class CreditSummary(BaseModel):
    user_id: str
    current_balance: float
    updated_at: str
    transactions: list[CreditTransaction]


def resolve_webhook_urls(overrides: dict[str, str] | None = None) -> dict[str, str]:
    if overrides is not None:
        return {key: value.strip() for key, value in overrides.items() if value.strip()}
    resolved: dict[str, str] = {}
    for webhook_type, env_name in WEBHOOK_URL_ENV_VARS.items():
        value = os.getenv(env_name, "").strip()
        if value:
            resolved[webhook_type] = value
    return resolved


def create_app(
    *,
    database_path: str | None = None,
    webhook_urls: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("WEBHOOKS_DB_PATH", DEFAULT_DB_PATH)
    resolved_urls = resolve_webhook_urls(webhook_urls)
    repository = CreditsRepository(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.repository = repository
        app.state.webhook_urls = resolved_urls
        app.state.client = httpx.AsyncClient(timeout=15, transport=transport)
        try:
            yield
        finally:
            await app.state.client.aclose()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Aspirely Webhooks", version="0.1.0", lifespan=lifespan)
    install_observability(app, LOGGER)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "webhooks"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/webhooks/route", response_model=RouteWebhookResponse)
    async def route_webhook(
        request: Request,
        payload: dict[str, Any] = Body(...),
    ) -> RouteWebhookResponse:
        webhook_type = payload.get("webhook_type")
        if webhook_type not in WEBHOOK_URL_ENV_VARS:
            log_event(LOGGER, "webhook_unknown_type", logging.WARNING, webhook_type=webhook_type)
            raise HTTPException(status_code=400, detail="Unknown webhook type")

        target_url = request.app.state.webhook_urls.get(webhook_type)
        if not target_url:
            log_event(LOGGER, "webhook_url_missing", logging.ERROR, webhook_type=webhook_type)
            raise HTTPException(status_code=500, detail="Webhook URL not configured")

        metrics = request.app.state.metrics
        try:
            response = await request.app.state.client.post(target_url, json=payload)
        except httpx.RequestError as exc:
            metrics.record_outcome(
                method=request.method,
                path=request.url.path,
                label="upstream_status",
                value="unreachable",
            )
            log_event(
                LOGGER,
                "webhook_forward_failed",
                logging.WARNING,
                webhook_type=webhook_type,
                error=str(exc),
            )
            raise HTTPException(status_code=502, detail="Failed to forward webhook") from exc

        metrics.record_outcome(
            method=request.method,
            path=request.url.path,
            label="upstream_status",
            value=response.status_code,
        )
        if response.status_code >= 400:
            log_event(
                LOGGER,
                "webhook_upstream_rejected",
                logging.WARNING,
                webhook_type=webhook_type,
                upstream_status=response.status_code,
            )
            raise HTTPException(status_code=502, detail="Failed to forward webhook")

        log_event(
            LOGGER,
            "webhook_forwarded",
            webhook_type=webhook_type,
            upstream_status=response.status_code,
        )
        return RouteWebhookResponse(
            status="processed",
            webhook_type=webhook_type,
            upstream_status=response.status_code,
        )

    @app.post("/records", response_model=FeatureRecord, status_code=201)
    async def register_record(payload: FeatureRecordCreate, request: Request) -> FeatureRecord:
        if payload.feature not in FEATURE_COSTS:
            raise HTTPException(status_code=422, detail="Unknown feature")
        return await run_in_threadpool(request.app.state.repository.register_record, payload)

    @app.put("/credits/{user_id}", response_model=UserCredits)
    async def set_balance(user_id: str, payload: SetBalanceRequest, request: Request) -> UserCredits:
        return await run_in_threadpool(
            request.app.state.repository.set_balance,
            user_id,
            payload.balance,
        )

    @app.get("/credits/{user_id}", response_model=CreditSummary)
    async def get_credits(
        user_id: str,
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> CreditSummary:
        credits = await run_in_threadpool(request.app.state.repository.get_credits, user_id)
        if credits is None:
            raise HTTPException(status_code=404, detail="User credits not found")
        transactions = await run_in_threadpool(
            request.app.state.repository.list_transactions,
            user_id,
            limit,
        )
        return CreditSummary(**credits.model_dump(), transactions=transactions)

    @app.post("/credits/{feature}/deduct", response_model=DeductResponse)
    async def deduct_credits(feature: str, payload: DeductRequest, request: Request) -> DeductResponse:
        cost = FEATURE_COSTS.get(feature)
        if cost is None:
            raise HTTPException(status_code=404, detail="Unknown feature")

        record = await run_in_threadpool(request.app.state.repository.get_record, feature, payload.id)
        if record is None:
            log_event(LOGGER, "credit_record_missing", logging.WARNING, feature=feature, record_id=payload.id)
            raise HTTPException(status_code=404, detail="Record not found")

        try:
            result = await run_in_threadpool(
                request.app.state.repository.deduct_credits,
                record.user_id,
                cost,
                feature_used=feature,
                description=record.description,
            )
        except CreditAccountNotFoundError as exc:
            raise HTTPException(status_code=404, detail="User credits not found") from exc

        if not result.deducted:
            log_event(
                LOGGER,
                "credit_deduction_insufficient",
                logging.INFO,
                feature=feature,
                user_id=record.user_id,
                balance=result.previous_balance,
            )
            raise HTTPException(status_code=402, detail="Insufficient credits")

        log_event(
            LOGGER,
            "credit_deducted",
            feature=feature,
            user_id=record.user_id,
            amount=cost,
            remaining=result.remaining_balance,
        )
        return DeductResponse(
            success=True,
            feature_used=feature,
            credits_deducted=cost,
            user_id=record.user_id,
            record_id=record.record_id,
            previous_balance=result.previous_balance,
            remaining_balance=result.remaining_balance,
        )

    return app


app = create_app()
