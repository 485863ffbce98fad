from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from common.utils import now_utc_iso
from pydantic import BaseModel, Field


class UserCredits(BaseModel):
    user_id: str
    current_balance: float
    updated_at: str


class CreditTransaction(BaseModel):
    id: int
    user_id: str
    transaction_type: str
    amount: float
    balance_before: float
    balance_after: float
    feature_used: str | None = None
    description: str | None = None
    created_at: str


class FeatureRecordCreate(BaseModel):
    record_id: str = Field(..., min_length=1, max_length=128)
    feature: str = Field(..., min_length=1, max_length=64)
    user_id: str = Field(..., min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=500)


class FeatureRecord(FeatureRecordCreate):
    created_at: str


class DeductionResult(BaseModel):
    deducted: bool
    previous_balance: float
    remaining_balance: float


class CreditAccountNotFoundError(LookupError):
    pass


class CreditsRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS user_credits (
                    user_id TEXT PRIMARY KEY,
                    current_balance REAL NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS credit_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    amount REAL NOT NULL,
                    balance_before REAL NOT NULL,
                    balance_after REAL NOT NULL,
                    feature_used TEXT,
                    description TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS feature_records (
                    feature TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (feature, record_id)
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def set_balance(self, user_id: str, balance: float) -> UserCredits:
        with self._lock:
            now = now_utc_iso()
            row = self.connection.execute(
                "SELECT current_balance FROM user_credits WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            previous = float(row["current_balance"]) if row is not None else 0.0
            self.connection.execute(
                """
                INSERT INTO user_credits (user_id, current_balance, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    current_balance = excluded.current_balance,
                    updated_at = excluded.updated_at
                """,
                (user_id, balance, now),
            )
            self._record_transaction(
                user_id=user_id,
                transaction_type="adjustment",
                amount=balance - previous,
                balance_before=previous,
                balance_after=balance,
                feature_used=None,
                description="Balance set",
                created_at=now,
            )
            self.connection.commit()
            return UserCredits(user_id=user_id, current_balance=balance, updated_at=now)

    def get_credits(self, user_id: str) -> UserCredits | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT user_id, current_balance, updated_at FROM user_credits WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            return UserCredits(
                user_id=row["user_id"],
                current_balance=float(row["current_balance"]),
                updated_at=row["updated_at"],
            )

    def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT *
                FROM credit_transactions
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
            return [CreditTransaction(**dict(row)) for row in rows]

    def deduct_credits(
        self,
        user_id: str,
        amount: float,
        *,
        feature_used: str,
        description: str | None = None,
    ) -> DeductionResult:
        """Take ``amount`` from the user's balance if it covers it.

        The balance check and the write are one conditional UPDATE, so two
        concurrent deductions can never overdraw the account.
        """
        with self._lock:
            row = self.connection.execute(
                "SELECT current_balance FROM user_credits WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                raise CreditAccountNotFoundError(user_id)
            previous = float(row["current_balance"])

            now = now_utc_iso()
            cursor = self.connection.execute(
                """
                UPDATE user_credits
                SET current_balance = current_balance - ?, updated_at = ?
                WHERE user_id = ? AND current_balance >= ?
                """,
                (amount, now, user_id, amount),
            )
            if cursor.rowcount == 0:
                self.connection.rollback()
                return DeductionResult(deducted=False, previous_balance=previous, remaining_balance=previous)

            remaining = previous - amount
            self._record_transaction(
                user_id=user_id,
                transaction_type="deduction",
                amount=-amount,
                balance_before=previous,
                balance_after=remaining,
                feature_used=feature_used,
                description=description,
                created_at=now,
            )
            self.connection.commit()
            return DeductionResult(deducted=True, previous_balance=previous, remaining_balance=remaining)

    def register_record(self, payload: FeatureRecordCreate) -> FeatureRecord:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO feature_records (feature, record_id, user_id, description, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(feature, record_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    description = excluded.description
                """,
                (payload.feature, payload.record_id, payload.user_id, payload.description, now),
            )
            self.connection.commit()
        record = self.get_record(payload.feature, payload.record_id)
        if record is None:
            raise RuntimeError("Failed to persist feature record")
        return record

    def get_record(self, feature: str, record_id: str) -> FeatureRecord | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT feature, record_id, user_id, description, created_at
                FROM feature_records
                WHERE feature = ? AND record_id = ?
                """,
                (feature, record_id),
            ).fetchone()
            if row is None:
                return None
            return FeatureRecord(**dict(row))

    def _record_transaction(
        self,
        *,
        user_id: str,
        transaction_type: str,
        amount: float,
        balance_before: float,
        balance_after: float,
        feature_used: str | None,
        description: str | None,
        created_at: str,
    ) -> None:
        self.connection.execute(
            """
            INSERT INTO credit_transactions (
                user_id,
                transaction_type,
                amount,
                balance_before,
                balance_after,
                feature_used,
                description,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                transaction_type,
                amount,
                balance_before,
                balance_after,
                feature_used,
                description,
                created_at,
            ),
        )
