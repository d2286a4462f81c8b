"""Retry scheduling policy for webhook deliveries.

``delay(n) = min(max_delay, base_delay * 2 ** (n - 1)) + jitter(0, base_delay)``

The policy only computes timestamps. Nothing here sleeps or wakes workers:
the worker pool polls for due tasks.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from webhook_service.settings import Settings


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: timedelta = timedelta(seconds=5)
    max_delay: timedelta = timedelta(hours=1)
    max_attempts: int = 6
    failure_deactivation_threshold: int = 5
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            max_attempts=settings.webhook_max_attempts,
            failure_deactivation_threshold=settings.webhook_failure_deactivation_threshold,
        )

    def backoff(self, attempt_number: int) -> timedelta:
        """Deterministic part of the delay after ``attempt_number`` failed (1-based)."""
        if attempt_number < 1:
            raise ValueError("attempt_number is 1-based")
        # cap the exponent so huge attempt numbers cannot overflow timedelta
        exponent = min(attempt_number - 1, 62)
        base_seconds = self.base_delay.total_seconds()
        return timedelta(seconds=min(self.max_delay.total_seconds(), base_seconds * (2**exponent)))

    def jitter(self) -> timedelta:
        return timedelta(seconds=self.rng.uniform(0, self.base_delay.total_seconds()))

    def delay(self, attempt_number: int, *, with_jitter: bool = True) -> timedelta:
        delay = self.backoff(attempt_number)
        if with_jitter:
            delay += self.jitter()
        return delay

    def should_retry(self, attempt_number: int) -> bool:
        return attempt_number < self.max_attempts

    def next_attempt_at(self, attempt_number: int, now: datetime) -> datetime | None:
        """When attempt ``attempt_number + 1`` is due, or None if the sequence is exhausted."""
        if not self.should_retry(attempt_number):
            return None
        return now + self.delay(attempt_number)

    def should_deactivate(self, consecutive_failure_count: int) -> bool:
        return consecutive_failure_count >= self.failure_deactivation_threshold
