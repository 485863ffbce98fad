from __future__ import annotations

from pathlib import Path

import pytest
from sessionsync.storage import (
    MemoryStorage,
    SafeStorage,
    SqliteStorage,
    StorageDeniedError,
    StorageQuotaExceededError,
)

pytestmark = pytest.mark.unit


class DeniedStorage:
    def __init__(self) -> None:
        self.calls = 0

    def get_item(self, key: str) -> str | None:
        self.calls += 1
        raise StorageDeniedError("access denied")

    def set_item(self, key: str, value: str) -> None:
        self.calls += 1
        raise StorageDeniedError("access denied")

    def remove_item(self, key: str) -> None:
        self.calls += 1
        raise StorageDeniedError("access denied")

    def clear(self) -> None:
        self.calls += 1
        raise StorageDeniedError("access denied")


def test_sqlite_storage_persists_across_instances(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cache.sqlite3")
    first = SqliteStorage(db_path)
    first.set_item("greeting", "hello")
    first.set_item("greeting", "hello again")
    first.close()

    second = SqliteStorage(db_path)
    assert second.get_item("greeting") == "hello again"
    second.remove_item("greeting")
    assert second.get_item("greeting") is None
    second.close()


def test_sqlite_storage_enforces_quota(tmp_path: Path) -> None:
    storage = SqliteStorage(str(tmp_path / "cache.sqlite3"), quota_bytes=32)
    storage.set_item("small", "x" * 10)

    with pytest.raises(StorageQuotaExceededError):
        storage.set_item("large", "y" * 64)

    assert storage.get_item("small") == "x" * 10
    assert storage.get_item("large") is None
    storage.close()


def test_sqlite_storage_reports_unusable_location_as_denied(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    storage = SqliteStorage(str(blocker / "cache.sqlite3"))

    with pytest.raises(StorageDeniedError):
        storage.get_item("anything")


def test_safe_storage_falls_back_to_memory_when_backend_is_denied() -> None:
    backend = DeniedStorage()
    storage = SafeStorage(backend)

    storage.set_item("key", "value")
    assert storage.available is False
    assert storage.get_item("key") == "value"
    storage.remove_item("key")
    assert storage.get_item("key") is None
    # Only the availability probe touched the backend.
    assert backend.calls == 1


def test_safe_storage_without_backend_is_memory_only() -> None:
    storage = SafeStorage(None)
    storage.set_item("key", "value")
    assert storage.get_item("key") == "value"
    storage.clear()
    assert storage.get_item("key") is None


def test_safe_storage_keeps_value_when_persist_fails_on_quota(tmp_path: Path) -> None:
    backend = SqliteStorage(str(tmp_path / "cache.sqlite3"), quota_bytes=64)
    storage = SafeStorage(backend)

    storage.set_item("profile", "old")
    storage.set_item("profile", "n" * 128)

    assert storage.available is True
    assert backend.get_item("profile") == "old"
    assert storage.get_item("profile") == "n" * 128

    storage.set_item("profile", "fits")
    assert storage.get_item("profile") == "fits"
    assert backend.get_item("profile") == "fits"
    backend.close()


def test_memory_storage_basic_operations() -> None:
    storage = MemoryStorage()
    storage.set_item("a", "1")
    storage.set_item("b", "2")
    assert len(storage) == 2
    storage.remove_item("a")
    storage.remove_item("missing")
    assert storage.get_item("a") is None
    assert storage.get_item("b") == "2"


def test_connection_raises_when_connect_leaves_no_connection(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    storage = SqliteStorage(str(tmp_path / "cache.sqlite3"))
    monkeypatch.setattr(storage, "connect", lambda: None)

    with pytest.raises(RuntimeError, match="Database connection is not initialized"):
        storage.get_item("anything")
