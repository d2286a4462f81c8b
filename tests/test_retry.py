from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from webhook_service.services.retry import RetryPolicy


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(rng=random.Random(1))


def test_backoff_doubles_until_capped(policy):
    assert policy.backoff(1) == timedelta(seconds=5)
    assert policy.backoff(2) == timedelta(seconds=10)
    assert policy.backoff(3) == timedelta(seconds=20)
    assert policy.backoff(20) == timedelta(hours=1)
    assert policy.backoff(10_000) == timedelta(hours=1)


def test_backoff_is_monotonic(policy):
    delays = [policy.backoff(n) for n in range(1, 30)]
    assert delays == sorted(delays)


def test_backoff_rejects_zero(policy):
    with pytest.raises(ValueError):
        policy.backoff(0)


def test_jitter_stays_within_base_delay(policy):
    for attempt in range(1, 8):
        delay = policy.delay(attempt)
        assert policy.backoff(attempt) <= delay <= policy.backoff(attempt) + policy.base_delay


def test_next_attempt_at_stops_at_max_attempts(policy):
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert policy.next_attempt_at(1, now) > now
    assert policy.next_attempt_at(5, now) is not None
    assert policy.next_attempt_at(6, now) is None
    assert policy.should_retry(5)
    assert not policy.should_retry(6)


def test_should_deactivate_at_threshold(policy):
    assert not policy.should_deactivate(4)
    assert policy.should_deactivate(5)
    assert policy.should_deactivate(6)


def test_from_settings(settings):
    policy = RetryPolicy.from_settings(settings)
    assert policy.base_delay == timedelta(seconds=1)
    assert policy.max_delay == timedelta(minutes=1)
    assert policy.max_attempts == 6
    assert policy.failure_deactivation_threshold == 3
