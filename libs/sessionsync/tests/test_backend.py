from __future__ import annotations

import base64
import json
import time

import httpx
import pytest
from sessionsync.backend import BackendClient, read_token_expiry
from sessionsync.errors import BackendError, FailureKind

pytestmark = pytest.mark.unit


def make_jwt(exp: float) -> str:
    def encode(part: dict[str, object]) -> str:
        return base64.urlsafe_b64encode(json.dumps(part).encode()).decode().rstrip("=")

    return f"{encode({'alg': 'HS256'})}.{encode({'sub': 'user-1', 'exp': exp})}.signature"


def test_read_token_expiry_handles_valid_and_opaque_tokens() -> None:
    assert read_token_expiry(make_jwt(1_900_000_000)) == 1_900_000_000
    assert read_token_expiry("opaque-token") is None
    assert read_token_expiry("a.!!!.c") is None


@pytest.mark.asyncio
async def test_select_sends_credentials_and_filters() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"user_id": "user-1", "bio": "Engineer"}])

    client = BackendClient("https://db.example.com/", "anon-key", transport=httpx.MockTransport(handler))
    client.set_session("opaque-token")

    result = await client.select(
        "user_profile",
        filters={"user_id": "user-1"},
        order="created_at.desc",
    )

    assert result.error is None
    assert result.data == [{"user_id": "user-1", "bio": "Engineer"}]
    request = seen[0]
    assert request.url.path == "/rest/v1/user_profile"
    assert request.url.params["user_id"] == "eq.user-1"
    assert request.url.params["order"] == "created_at.desc"
    assert request.url.params["select"] == "*"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer opaque-token"
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "body", "kind"),
    [
        (401, {"message": "JWT expired", "code": "PGRST301"}, FailureKind.AUTH),
        (503, {"message": "upstream unavailable"}, FailureKind.TRANSIENT),
        (409, {"message": "duplicate key value", "code": "23505"}, None),
    ],
)
async def test_error_responses_become_backend_errors(status_code: int, body: dict, kind) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    client = BackendClient("https://db.example.com", "anon-key", transport=httpx.MockTransport(handler))
    client.set_session("opaque-token")

    result = await client.rpc("deduct_credits", {"amount": 1})

    assert isinstance(result.error, BackendError)
    assert result.error.status_code == status_code
    assert result.error.kind is kind
    assert result.error.message == body["message"]
    await client.aclose()


@pytest.mark.asyncio
async def test_expired_session_triggers_auth_failure_callback() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("authorization", ""))
        return httpx.Response(200, json=[])

    client = BackendClient("https://db.example.com", "anon-key", transport=httpx.MockTransport(handler))
    client.set_session(make_jwt(time.time() - 60))
    fresh = make_jwt(time.time() + 3600)
    refreshes = 0

    async def refresh() -> str | None:
        nonlocal refreshes
        refreshes += 1
        client.set_session(fresh)
        return fresh

    client.on_auth_failure(refresh)
    await client.select("job_analyses")
    await client.select("job_analyses")

    assert refreshes == 1
    assert seen == [f"Bearer {fresh}", f"Bearer {fresh}"]
    await client.aclose()


@pytest.mark.asyncio
async def test_empty_body_yields_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    client = BackendClient("https://db.example.com", "anon-key", transport=httpx.MockTransport(handler))
    client.set_session("opaque-token")

    result = await client.request("PATCH", "/rest/v1/user_profile", payload={"bio": "x"})

    assert result.data is None
    assert result.error is None
    await client.aclose()
