"""Key/value storage adapters backing the local cache.

``SqliteStorage`` is the persistent store shared by every process of a user
profile. ``SafeStorage`` wraps it and silently degrades to ``MemoryStorage``
whenever the platform refuses access, so callers never see a storage error.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from common.utils import log_event, now_utc_iso

LOGGER = logging.getLogger("aspirely.storage")
PROBE_KEY = "__storage_test__"


class StorageDeniedError(OSError):
    """The platform refused access to persistent storage."""


class StorageQuotaExceededError(StorageDeniedError):
    pass


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def clear(self) -> None: ...


class MemoryStorage:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._data)

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class SqliteStorage:
    def __init__(self, database_path: str, *, quota_bytes: int | None = None) -> None:
        self.database_path = Path(database_path)
        self.quota_bytes = quota_bytes
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._connection is None:
                self.connect()
            if self._connection is None:
                raise RuntimeError("Database connection is not initialized")
            return self._connection

    def connect(self) -> None:
        with self._lock:
            try:
                self.database_path.parent.mkdir(parents=True, exist_ok=True)
                self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
                self._connection.row_factory = sqlite3.Row
                self._connection.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv_store (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                self._connection.commit()
            except (sqlite3.Error, OSError) as exc:
                self._connection = None
                raise StorageDeniedError(f"storage unavailable: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def get_item(self, key: str) -> str | None:
        with self._lock:
            try:
                row = self.connection.execute(
                    "SELECT value FROM kv_store WHERE key = ?",
                    (key,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageDeniedError(str(exc)) from exc
            return None if row is None else str(row["value"])

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            if self.quota_bytes is not None:
                self._check_quota(key, value)
            try:
                self.connection.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, now_utc_iso()),
                )
                self.connection.commit()
            except sqlite3.Error as exc:
                raise StorageDeniedError(str(exc)) from exc

    def remove_item(self, key: str) -> None:
        with self._lock:
            try:
                self.connection.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                self.connection.commit()
            except sqlite3.Error as exc:
                raise StorageDeniedError(str(exc)) from exc

    def clear(self) -> None:
        with self._lock:
            try:
                self.connection.execute("DELETE FROM kv_store")
                self.connection.commit()
            except sqlite3.Error as exc:
                raise StorageDeniedError(str(exc)) from exc

    def _check_quota(self, key: str, value: str) -> None:
        try:
            row = self.connection.execute(
                """
                SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) AS used
                FROM kv_store
                WHERE key != ?
                """,
                (key,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageDeniedError(str(exc)) from exc
        used = int(row["used"])
        if used + len(key) + len(value) > int(self.quota_bytes or 0):
            raise StorageQuotaExceededError(
                f"quota of {self.quota_bytes} bytes exceeded writing {key!r}"
            )


class SafeStorage:
    """Failure-tolerant adapter over a persistent backend.

    Availability is probed once, lazily, on first use. While the backend is
    available every call goes to it; any ``StorageDeniedError`` is logged and
    the call is served by the in-memory fallback instead.
    """

    def __init__(self, backend: KeyValueStorage | None, fallback: MemoryStorage | None = None) -> None:
        self.backend = backend
        self.fallback = fallback or MemoryStorage()
        self._available: bool | None = None

    @property
    def available(self) -> bool:
        if self._available is None:
            self._available = self._probe()
        return self._available

    def _probe(self) -> bool:
        if self.backend is None:
            return False
        try:
            self.backend.set_item(PROBE_KEY, "test")
            self.backend.remove_item(PROBE_KEY)
        except StorageDeniedError as exc:
            log_event(LOGGER, "storage_unavailable", logging.WARNING, error=str(exc))
            return False
        return True

    def get_item(self, key: str) -> str | None:
        # The fallback only holds values whose persist failed, so it is newer.
        pending = self.fallback.get_item(key)
        if pending is not None or not self.available:
            return pending
        try:
            return self.backend.get_item(key)
        except StorageDeniedError as exc:
            log_event(LOGGER, "storage_read_denied", logging.WARNING, key=key, error=str(exc))
            return None

    def set_item(self, key: str, value: str) -> None:
        if self.available:
            try:
                self.backend.set_item(key, value)
            except StorageDeniedError as exc:
                log_event(LOGGER, "storage_write_denied", logging.WARNING, key=key, error=str(exc))
            else:
                self.fallback.remove_item(key)
                return
        self.fallback.set_item(key, value)

    def remove_item(self, key: str) -> None:
        self.fallback.remove_item(key)
        if not self.available:
            return
        try:
            self.backend.remove_item(key)
        except StorageDeniedError as exc:
            log_event(LOGGER, "storage_remove_denied", logging.WARNING, key=key, error=str(exc))

    def clear(self) -> None:
        self.fallback.clear()
        if not self.available:
            return
        try:
            self.backend.clear()
        except StorageDeniedError as exc:
            log_event(LOGGER, "storage_clear_denied", logging.WARNING, error=str(exc))
