from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from sessionsync import container as container_module
from sessionsync.bridge import BridgeState
from sessionsync.cache import LocalCacheStore
from sessionsync.container import SessionContainer, get_container, reset_container
from sessionsync.settings import SessionSettings
from sessionsync.storage import MemoryStorage, SafeStorage

pytestmark = pytest.mark.integration

LOGO_URL = "https://cdn.example.com/logo.png"


class StaticProvider:
    def __init__(self, *tokens: str | None) -> None:
        self.tokens = list(tokens)
        self.templates: list[str | None] = []

    async def get_token(self, *, template: str | None = None) -> str | None:
        self.templates.append(template)
        if len(self.tokens) > 1:
            return self.tokens.pop(0)
        return self.tokens[0]


class FakeBackend:
    """Serves profile and job analysis rows, rejecting the first N requests with 401."""

    def __init__(self, *, unauthorized: int = 0, logo_status: int = 200) -> None:
        self.unauthorized = unauthorized
        self.logo_status = logo_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "cdn.example.com":
            return httpx.Response(
                self.logo_status,
                content=b"\x89PNG",
                headers={"content-type": "image/png"},
            )
        if self.unauthorized:
            self.unauthorized -= 1
            return httpx.Response(401, json={"message": "JWT expired", "code": "PGRST301"})
        if request.url.path == "/rest/v1/user_profile":
            return httpx.Response(200, json=[{"user_id": "user-1", "bio": "Engineer", "resume": "cv.pdf"}])
        if request.url.path == "/rest/v1/job_analyses":
            return httpx.Response(200, json=[{"id": "a-2"}, {"id": "a-1"}])
        return httpx.Response(404, json={"message": "not found"})


def build_container(backend: FakeBackend) -> SessionContainer:
    settings = SessionSettings(
        backend_url="https://db.example.com",
        backend_key="anon-key",
        storage_path=None,
        retry_base_delay=0,
        sync_debounce=0,
        logo_url=LOGO_URL,
    )
    return SessionContainer(settings, transport=httpx.MockTransport(backend))


@pytest.mark.asyncio
async def test_sign_in_then_load_profile_and_completion() -> None:
    backend = FakeBackend()
    container = build_container(backend)

    assert await container.sign_in(StaticProvider("token-1")) is True
    assert container.bridge.state is BridgeState.SYNCED

    profile = await container.profiles.refetch("user-1")

    assert profile["bio"] == "Engineer"
    assert container.completion.status("user-1").is_complete is True
    assert backend.requests[0].headers["authorization"] == "Bearer token-1"
    await container.aclose()


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_transparently() -> None:
    backend = FakeBackend(unauthorized=1)
    container = build_container(backend)
    provider = StaticProvider("token-1", "token-2")
    await container.sign_in(provider)

    analyses = await container.job_analyses.refresh("user-1")

    assert analyses == [{"id": "a-2"}, {"id": "a-1"}]
    assert [request.headers["authorization"] for request in backend.requests] == [
        "Bearer token-1",
        "Bearer token-2",
    ]
    assert backend.requests[-1].url.params["order"] == "created_at.desc"
    assert provider.templates == ["supabase", "supabase"]
    await container.aclose()


@pytest.mark.asyncio
async def test_sign_in_without_token_reports_failure() -> None:
    container = build_container(FakeBackend())
    assert await container.sign_in(StaticProvider(None)) is False
    await container.aclose()


@pytest.mark.asyncio
async def test_sign_out_drops_user_scoped_caches() -> None:
    container = build_container(FakeBackend())
    await container.sign_in(StaticProvider("token-1"))
    await container.profiles.refetch("user-1")
    await container.job_analyses.refresh("user-1")

    container.sign_out()

    assert container.profiles.initial("user-1") is None
    assert container.job_analyses.initial("user-1") is None
    assert container.backend.has_session is False
    await container.aclose()


@pytest.mark.asyncio
async def test_logo_is_cached_as_data_url() -> None:
    backend = FakeBackend()
    container = build_container(backend)

    first = await container.logo_url()
    second = await container.logo_url()

    assert first == "data:image/png;base64,iVBORw=="
    assert second == first
    assert len(backend.requests) == 1
    await container.aclose()


@pytest.mark.asyncio
async def test_logo_falls_back_to_remote_url_on_failure() -> None:
    container = build_container(FakeBackend(logo_status=500))
    assert await container.logo_url() == LOGO_URL
    await container.aclose()


@pytest.mark.asyncio
async def test_get_container_is_a_process_singleton(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ASPIRELY_BACKEND_URL", "https://db.example.com")
    monkeypatch.setenv("ASPIRELY_MAX_RETRIES", "5")
    monkeypatch.setattr(container_module, "_container", None)

    first = get_container(SessionSettings(storage_path=None))
    assert get_container() is first

    await reset_container()
    second = get_container(SessionSettings.from_env(storage_path=str(tmp_path / "cache.sqlite3")))
    assert second is not first
    assert second.settings.max_retries == 5
    assert second.settings.backend_url == "https://db.example.com"
    await reset_container()


class OfflineProvider:
    async def get_token(self, *, template: str | None = None) -> str | None:
        raise httpx.ConnectError("identity provider unreachable")


@pytest.mark.asyncio
async def test_sign_in_with_unreachable_provider_stays_unsynced() -> None:
    container = build_container(FakeBackend())

    assert await container.sign_in(OfflineProvider()) is False
    assert container.bridge.state is BridgeState.UNSYNCED
    assert container.backend.has_session is False
    await container.aclose()


@pytest.mark.asyncio
async def test_logo_is_refetched_once_its_ttl_has_elapsed(clock) -> None:
    backend = FakeBackend()
    settings = SessionSettings(
        backend_url="https://db.example.com",
        backend_key="anon-key",
        storage_path=None,
        logo_url=LOGO_URL,
    )
    store = LocalCacheStore(SafeStorage(MemoryStorage()), clock=clock)
    container = SessionContainer(settings, transport=httpx.MockTransport(backend), store=store)

    await container.logo_url()
    clock.advance(minutes=25 * 60)
    await container.logo_url()

    assert len(backend.requests) == 2
    await container.aclose()
