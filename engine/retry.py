"""
Retry classification and exponential backoff
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from core.config import settings
from core.exceptions import NonRetryableError, RetryableError
from schemas.pipeline import ErrorHandlingConfig, ErrorStrategy, Step


def compute_delay(
    attempt: int,
    initial_delay_ms: float,
    max_delay_ms: float,
    backoff_multiplier: float,
) -> float:
    """
    Backoff delay before retry number `attempt` (0-based), in milliseconds.

    min(max_delay_ms, initial_delay_ms * backoff_multiplier ** attempt)
    """
    try:
        delay = initial_delay_ms * (backoff_multiplier ** max(attempt, 0))
    except OverflowError:
        return float(max_delay_ms)
    return float(min(max_delay_ms, delay))


def is_retryable(error: BaseException, adapter=None) -> bool:
    """
    Whether a failed call may be repeated on the same input.

    Errors state it through RetryableError / NonRetryableError; anything
    else is retryable only when raised by a pure adapter.
    """
    if isinstance(error, NonRetryableError):
        return False
    if isinstance(error, (RetryableError, asyncio.TimeoutError)):
        return True
    return bool(getattr(adapter, "pure", False))


@dataclass
class RetryPolicy:
    """
    How often and how slowly a failing sub-batch is retried.

    `max_attempts` counts retries after the first try; retry number
    `attempt` (0-based) is allowed while attempt < max_attempts.
    """
    max_attempts: int = 0
    initial_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2.0

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def delay_ms(self, attempt: int) -> float:
        return compute_delay(attempt, self.initial_delay_ms, self.max_delay_ms, self.backoff_multiplier)

    async def wait(self, attempt: int) -> None:
        delay = self.delay_ms(attempt)
        if delay > 0:
            await asyncio.sleep(delay / 1000)

    @classmethod
    def for_step(cls, step: Step, error_handling: Optional[ErrorHandlingConfig] = None) -> "RetryPolicy":
        """
        Policy for one step.

        `step.retries` wins; otherwise steps under the RETRY strategy get
        the pipeline's (or the engine's) retry count, and all others none.
        """
        error_handling = error_handling or ErrorHandlingConfig()
        strategy = step.on_error or error_handling.strategy

        if step.retries is not None:
            attempts = max(step.retries, 0)
        elif strategy == ErrorStrategy.RETRY:
            attempts = error_handling.max_retries if error_handling.max_retries is not None else settings.MAX_RETRIES
        else:
            attempts = 0

        initial = step.retry_delay_ms
        if initial is None:
            initial = error_handling.retry_delay_ms
        if initial is None:
            initial = settings.RETRY_INITIAL_DELAY_MS

        return cls(
            max_attempts=attempts,
            initial_delay_ms=initial,
            max_delay_ms=error_handling.max_retry_delay_ms or settings.RETRY_MAX_DELAY_MS,
            backoff_multiplier=error_handling.backoff_multiplier or settings.RETRY_BACKOFF_MULTIPLIER,
        )
