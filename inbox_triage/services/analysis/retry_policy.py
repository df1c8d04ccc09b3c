"""Explicit retry policy with exponential backoff, returning a typed outcome instead of raising."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given 1-based attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    value: T | None
    error: Exception | None
    attempts: int

    @property
    def succeeded(self) -> bool:
        return self.error is None


async def run_with_retry(
    policy: RetryPolicy,
    operation: Callable[[], Awaitable[T]],
    is_retryable: Callable[[Exception], bool],
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """
    Call ``operation`` until it succeeds, raises a non-retryable error, or
    ``policy.max_attempts`` is reached. Cancellation is never swallowed.
    """
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return RetryOutcome(value=await operation(), error=None, attempts=attempt)
        except Exception as e:
            last_error = e
            if not is_retryable(e):
                logger.warning(
                    "Non-retryable failure",
                    operation=operation_name,
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return RetryOutcome(value=None, error=e, attempts=attempt)

            if attempt < policy.max_attempts:
                wait_time = policy.delay_for(attempt)
                logger.warning(
                    "Transient failure, retrying",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    wait_time=wait_time,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await sleep(wait_time)

    logger.error(
        "Operation failed after all retries",
        operation=operation_name,
        attempts=policy.max_attempts,
        final_error=str(last_error),
    )
    return RetryOutcome(value=None, error=last_error, attempts=policy.max_attempts)
