"""Exponential backoff for failed jobs."""

import random
from dataclasses import dataclass

from jobqueue.models.job import Job

DEFAULT_MAX_DELAY_MS = 3_600_000  # 1 hour


@dataclass
class RetryPolicy:
    """Retry policy configuration.

    delay(attempt) = initial_delay_ms * backoff_multiplier ** (attempt - 1),
    capped at max_delay_ms.
    """
    max_retries: int = 3
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    jitter: bool = False  # Add randomness to prevent thundering herd

    @classmethod
    def for_job(
        cls,
        job: Job,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        jitter: bool = False,
    ) -> "RetryPolicy":
        """Build the policy a job was enqueued with."""
        return cls(
            max_retries=job.max_retries,
            initial_delay_ms=job.initial_delay_ms,
            backoff_multiplier=job.backoff_multiplier,
            max_delay_ms=max_delay_ms,
            jitter=jitter,
        )

    def get_delay_ms(self, attempt: int) -> float:
        """Calculate delay before the retry that follows `attempt` (1-based)."""
        attempt = max(attempt, 1)
        try:
            delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        except OverflowError:
            delay = float("inf")
        delay = min(delay, self.max_delay_ms)
        if self.jitter:
            # Add 0-50% jitter
            delay *= (1 + random.random() * 0.5)
        return delay

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_retries
