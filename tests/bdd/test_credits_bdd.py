from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from pytest_bdd import given, parsers, scenario, then, when
from webhooks.main import create_app

pytestmark = pytest.mark.bdd


@scenario("features/credits.feature", "Deduct credits for a completed company analysis")
def test_deduct_company_analysis() -> None:
    pass


@scenario("features/credits.feature", "Refuse a deduction the balance cannot cover")
def test_refuse_insufficient_deduction() -> None:
    pass


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(
        database_path=str(tmp_path / "webhooks.sqlite3"),
        webhook_urls={},
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )
    with TestClient(app) as test_client:
        yield test_client


@given(parsers.parse("a user with {balance:d} credits"))
def given_user_with_credits(client: TestClient, balance: int) -> None:
    response = client.put("/credits/user-1", json={"balance": balance})
    assert response.status_code == 200


@given("a completed company analysis for that user")
def given_completed_company_analysis(client: TestClient) -> None:
    response = client.post(
        "/records",
        json={
            "record_id": "analysis-1",
            "feature": "company_analysis",
            "user_id": "user-1",
            "description": "Company analysis completed for Acme - Staff Engineer",
        },
    )
    assert response.status_code == 201


@when("credits are deducted for the company analysis", target_fixture="response")
def when_credits_deducted(client: TestClient):
    return client.post("/credits/company_analysis/deduct", json={"id": "analysis-1"})


@then("the deduction succeeds")
def then_deduction_succeeds(response) -> None:
    assert response.status_code == 200
    assert response.json()["credits_deducted"] == 3.0


@then("the deduction is refused as insufficient")
def then_deduction_refused(response) -> None:
    assert response.status_code == 402


@then(parsers.parse("the user has {balance:d} credits left"))
def then_user_has_credits_left(client: TestClient, balance: int) -> None:
    assert client.get("/credits/user-1").json()["current_balance"] == balance
