"""Bounded retry with exponential backoff."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from replayengine.logger import get_logger
from replayengine.models import FailureDecision, RetryConfig

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    initial_backoff_ms=500,
    backoff_multiplier=2,
    max_backoff_ms=8000,
)

# (operation_id, error, attempt) -> decision
FailurePolicy = Callable[[Any, BaseException, int], FailureDecision]


def calc_backoff(attempt: int, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> float:
    """Backoff in ms for the 0-indexed attempt, capped at the ceiling."""
    return config.backoff(attempt)


def non_retryable(*error_types: type[BaseException]) -> FailurePolicy:
    """Build a policy that aborts on ``error_types`` and retries otherwise."""

    def policy(operation_id: Any, error: BaseException, attempt: int) -> FailureDecision:
        if isinstance(error, error_types):
            return FailureDecision.ABORT
        return FailureDecision.RETRY

    return policy


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    on_failure: FailurePolicy | None = None,
    *,
    operation_id: Any = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T | None:
    """Run ``operation`` up to ``max_retries + 1`` times.

    On a failure with retries remaining, ``on_failure`` decides what happens:
    RETRY waits the backoff and tries again, SKIP returns ``None`` without an
    error, ABORT re-raises immediately. Once retries are exhausted the last
    error propagates.
    """
    last_error: BaseException | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            if attempt >= config.max_retries:
                break

            decision = FailureDecision.RETRY
            if on_failure is not None:
                decision = FailureDecision(on_failure(operation_id, exc, attempt))

            if decision == FailureDecision.ABORT:
                log.debug("retry_aborted", operation=operation_id, attempt=attempt)
                raise
            if decision == FailureDecision.SKIP:
                log.debug("retry_skipped", operation=operation_id, attempt=attempt)
                return None

            delay_ms = config.backoff(attempt)
            log.debug(
                "retry_scheduled",
                operation=operation_id,
                attempt=attempt,
                delay_ms=delay_ms,
                error=str(exc)[:200],
            )
            await sleep(delay_ms / 1000)

    assert last_error is not None
    raise last_error
