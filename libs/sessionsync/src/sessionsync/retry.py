from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from common.utils import log_event
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from sessionsync.errors import (
    AuthFailure,
    FailureKind,
    FatalFailure,
    OperationResult,
    RequestFailedError,
    RequestOutcome,
    Success,
    TransientFailure,
    to_outcome,
)

LOGGER = logging.getLogger("aspirely.retry")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 0.5

Operation = Callable[[], Awaitable[Any]]


class TokenSource(Protocol):
    async def refresh(self) -> str | None: ...


class RetryableFailure(Exception):
    """Raised inside an attempt whose outcome is worth another try."""

    def __init__(self, outcome: RequestOutcome) -> None:
        super().__init__(repr(outcome.error))
        self.outcome = outcome


class AuthenticatedRequestWrapper:
    """Runs backend operations, hiding short-lived auth and network failures.

    Auth failures refresh the token through ``bridge`` before each retry.
    Transient failures are retried as they are only when ``retry_transient``
    is set. Retries wait ``attempt * base_delay`` seconds. Any other failure
    surfaces on the first attempt.
    """

    def __init__(
        self,
        bridge: TokenSource,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        retry_transient: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.bridge = bridge
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.retry_transient = retry_transient
        self.sleep = sleep

    async def execute(
        self,
        operation: Operation,
        label: str = "operation",
        *,
        max_retries: int | None = None,
    ) -> Any:
        retries = self.max_retries if max_retries is None else max_retries
        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception_type(RetryableFailure),
            sleep=self.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                outcome = await self._attempt(operation, retries_remaining=retries - number + 1)
                if isinstance(outcome, Success):
                    if number > 1:
                        log_event(LOGGER, "request_recovered", label=label, retries=number - 1)
                    return outcome.data
                await self._prepare_retry(outcome, label=label, attempts=number)

    async def _prepare_retry(self, outcome: RequestOutcome, *, label: str, attempts: int) -> None:
        """Raise ``RequestFailedError`` if ``outcome`` ends the request, else ``RetryableFailure``.

        An auth failure refreshes the token here, before the backoff sleep.
        """
        if isinstance(outcome, FatalFailure) or (
            isinstance(outcome, TransientFailure) and not self.retry_transient
        ):
            kind = FailureKind.FATAL if isinstance(outcome, FatalFailure) else FailureKind.TRANSIENT
            log_event(
                LOGGER,
                "request_failed",
                logging.WARNING,
                label=label,
                kind=kind.value,
                attempts=attempts,
                error=repr(outcome.error),
            )
            raise RequestFailedError(
                kind=kind,
                label=label,
                attempts=attempts,
                last_error=outcome.error,
            ) from outcome.error

        kind = FailureKind.AUTH if isinstance(outcome, AuthFailure) else FailureKind.TRANSIENT
        if outcome.retries_remaining <= 0:
            log_event(
                LOGGER,
                "request_retries_exhausted",
                logging.WARNING,
                label=label,
                kind=kind.value,
                attempts=attempts,
                error=repr(outcome.error),
            )
            raise RequestFailedError(
                kind=kind,
                label=label,
                attempts=attempts,
                last_error=outcome.error,
            ) from outcome.error

        log_event(
            LOGGER,
            "request_retry",
            logging.INFO,
            label=label,
            kind=kind.value,
            attempt=attempts,
            error=repr(outcome.error),
        )
        if isinstance(outcome, AuthFailure):
            token = await self.bridge.refresh()
            if token is None:
                log_event(LOGGER, "request_abandoned", logging.WARNING, label=label)
                raise RequestFailedError(
                    kind=FailureKind.AUTH,
                    label=label,
                    attempts=attempts,
                    last_error=outcome.error,
                    session_lost=True,
                ) from outcome.error
        raise RetryableFailure(outcome)

    async def _attempt(self, operation: Operation, *, retries_remaining: int) -> RequestOutcome:
        try:
            result = await operation()
        except Exception as exc:
            return to_outcome(None, exc, retries_remaining=retries_remaining)
        if isinstance(result, OperationResult):
            return to_outcome(result.data, result.error, retries_remaining=retries_remaining)
        return Success(result)
