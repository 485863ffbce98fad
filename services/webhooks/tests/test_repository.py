from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from webhooks.repository import CreditAccountNotFoundError, CreditsRepository, FeatureRecordCreate

pytestmark = pytest.mark.unit


@pytest.fixture
def repository(tmp_path: Path):
    repo = CreditsRepository(str(tmp_path / "webhooks.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


def test_deduct_credits_updates_balance_and_ledger(repository: CreditsRepository) -> None:
    repository.set_balance("user-1", 5.0)

    result = repository.deduct_credits("user-1", 3.0, feature_used="company_analysis", description="Acme")

    assert result.deducted is True
    assert result.previous_balance == 5.0
    assert result.remaining_balance == 2.0
    assert repository.get_credits("user-1").current_balance == 2.0
    latest = repository.list_transactions("user-1")[0]
    assert latest.transaction_type == "deduction"
    assert latest.amount == -3.0
    assert latest.balance_after == 2.0
    assert latest.feature_used == "company_analysis"


def test_insufficient_balance_leaves_account_untouched(repository: CreditsRepository) -> None:
    repository.set_balance("user-1", 1.0)

    result = repository.deduct_credits("user-1", 1.5, feature_used="linkedin_image")

    assert result.deducted is False
    assert result.remaining_balance == 1.0
    assert repository.get_credits("user-1").current_balance == 1.0
    assert [tx.transaction_type for tx in repository.list_transactions("user-1")] == ["adjustment"]


def test_missing_account_raises(repository: CreditsRepository) -> None:
    with pytest.raises(CreditAccountNotFoundError):
        repository.deduct_credits("ghost", 1.0, feature_used="job_analysis")


def test_concurrent_deductions_never_overdraw(repository: CreditsRepository) -> None:
    repository.set_balance("user-1", 5.0)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(
                lambda _: repository.deduct_credits("user-1", 1.0, feature_used="job_analysis"),
                range(12),
            )
        )

    assert sum(result.deducted for result in results) == 5
    assert repository.get_credits("user-1").current_balance == 0.0


def test_register_record_is_idempotent(repository: CreditsRepository) -> None:
    payload = FeatureRecordCreate(record_id="r-1", feature="resume_pdf", user_id="user-1")
    first = repository.register_record(payload)
    second = repository.register_record(payload.model_copy(update={"description": "Resume PDF"}))

    assert second.created_at == first.created_at
    assert second.description == "Resume PDF"
    assert repository.get_record("resume_pdf", "r-1").user_id == "user-1"
    assert repository.get_record("job_analysis", "r-1") is None


def test_balance_persists_across_connections(tmp_path: Path) -> None:
    db_path = str(tmp_path / "webhooks.sqlite3")
    first = CreditsRepository(db_path)
    first.connect()
    first.set_balance("user-1", 7.5)
    first.close()

    second = CreditsRepository(db_path)
    second.connect()
    assert second.get_credits("user-1").current_balance == 7.5
    second.close()
