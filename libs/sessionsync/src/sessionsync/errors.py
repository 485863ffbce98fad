"""Failure taxonomy shared by the backend client and the request wrapper."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx

LOGGER = logging.getLogger("aspirely.errors")

T = TypeVar("T")

AUTH_ERROR_CODES = frozenset({"PGRST301", "PGRST302", "42501"})
AUTH_STATUS_CODES = frozenset({401, 403})
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

# Deprecated text heuristics, consulted only when an error carries no structured kind.
AUTH_MARKERS = ("jwt", "token", "session", "expired", "permission denied", "unauthorized")
TRANSIENT_MARKERS = ("network", "timeout", "timed out", "connection", "502", "503", "504")


class FailureKind(str, Enum):
    AUTH = "auth"
    TRANSIENT = "transient"
    FATAL = "fatal"
    STORAGE_DENIED = "storage_denied"


USER_MESSAGES = {
    FailureKind.AUTH: "Please try again.",
    FailureKind.TRANSIENT: "Connection issue. Please check your internet and try again.",
    FailureKind.FATAL: "Something went wrong. Please try again.",
    FailureKind.STORAGE_DENIED: "Something went wrong. Please try again.",
}
SESSION_LOST_MESSAGE = "Please refresh the page to continue."


class BackendError(Exception):
    """An error reported by the backend, tagged with a structured kind."""

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.code = code


class RequestFailedError(Exception):
    def __init__(
        self,
        *,
        kind: FailureKind,
        label: str,
        attempts: int,
        last_error: BaseException | None,
        session_lost: bool = False,
    ) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s): {kind.value}")
        self.kind = kind
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        self.session_lost = session_lost

    @property
    def user_message(self) -> str:
        if self.session_lost:
            return SESSION_LOST_MESSAGE
        return USER_MESSAGES[self.kind]


@dataclass
class OperationResult(Generic[T]):
    data: T | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class Success(Generic[T]):
    data: T


@dataclass(frozen=True)
class AuthFailure:
    error: BaseException
    retries_remaining: int


@dataclass(frozen=True)
class TransientFailure:
    error: BaseException
    retries_remaining: int


@dataclass(frozen=True)
class FatalFailure:
    error: BaseException
    reason: str


RequestOutcome = Success[Any] | AuthFailure | TransientFailure | FatalFailure


def classify_failure(error: BaseException) -> FailureKind:
    if isinstance(error, BackendError):
        if error.kind is not None:
            return error.kind
        if error.code in AUTH_ERROR_CODES or error.status_code in AUTH_STATUS_CODES:
            return FailureKind.AUTH
        if error.status_code in TRANSIENT_STATUS_CODES:
            return FailureKind.TRANSIENT
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code in AUTH_STATUS_CODES:
            return FailureKind.AUTH
        if status_code in TRANSIENT_STATUS_CODES:
            return FailureKind.TRANSIENT
        return FailureKind.FATAL
    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return FailureKind.TRANSIENT
    return _classify_by_text(error)


def _classify_by_text(error: BaseException) -> FailureKind:
    message = str(error).lower()
    if any(marker in message for marker in AUTH_MARKERS):
        LOGGER.debug("classified %s as auth failure from message text", type(error).__name__)
        return FailureKind.AUTH
    if any(marker in message for marker in TRANSIENT_MARKERS):
        LOGGER.debug("classified %s as transient failure from message text", type(error).__name__)
        return FailureKind.TRANSIENT
    return FailureKind.FATAL


def to_outcome(
    data: Any,
    error: BaseException | None,
    *,
    retries_remaining: int,
) -> RequestOutcome:
    if error is None:
        return Success(data)
    kind = classify_failure(error)
    if kind is FailureKind.AUTH:
        return AuthFailure(error=error, retries_remaining=retries_remaining)
    if kind is FailureKind.TRANSIENT:
        return TransientFailure(error=error, retries_remaining=retries_remaining)
    return FatalFailure(error=error, reason=kind.value)
