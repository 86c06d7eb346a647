"""Retry state and backoff policy for model calls."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Attempt:
    """One try of a call.

    ``number`` counts from zero; ``last_error`` is the failure that led to
    this attempt, if any.
    """

    number: int = 0
    last_error: Optional[Exception] = None

    @property
    def is_retry(self) -> bool:
        return self.number > 0

    def next(self, error: Exception) -> "Attempt":
        return Attempt(number=self.number + 1, last_error=error)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff bounded by a retry budget.

    Args:
        max_retries: Retries allowed after the first attempt
        base_delay_ms: Delay before the first retry
        max_delay_ms: Ceiling applied to every computed delay
    """

    max_retries: int = 2
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000

    def can_retry(self, attempt: Attempt) -> bool:
        return attempt.number < self.max_retries

    def delay_ms(self, attempt: Attempt, retry_after_seconds: Optional[float] = None) -> int:
        """Milliseconds to wait after ``attempt`` failed.

        A server supplied ``Retry-After`` replaces the exponential delay.
        """
        if retry_after_seconds is not None and retry_after_seconds >= 0:
            wait_ms = retry_after_seconds * 1000
        else:
            wait_ms = self.base_delay_ms * (2 ** attempt.number)
        return int(min(wait_ms, self.max_delay_ms))
