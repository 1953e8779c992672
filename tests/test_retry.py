"""Tests for the exponential backoff policy."""

import pytest

from jobqueue.models.job import Job
from jobqueue.queue.retry import RetryPolicy


@pytest.mark.parametrize("attempt,expected_ms", [(1, 1000), (2, 2000), (3, 4000), (4, 8000)])
def test_default_backoff(attempt, expected_ms):
    """Defaults give 1000 ms doubling per attempt."""
    assert RetryPolicy().get_delay_ms(attempt) == expected_ms


def test_attempt_below_one_uses_initial_delay():
    assert RetryPolicy(initial_delay_ms=250).get_delay_ms(0) == 250


def test_max_delay_caps_backoff():
    policy = RetryPolicy(initial_delay_ms=1000, backoff_multiplier=10, max_delay_ms=30_000)
    assert policy.get_delay_ms(2) == 10_000
    assert policy.get_delay_ms(3) == 30_000


def test_default_cap_is_one_hour():
    """Delays stop growing at an hour, even past float range."""
    policy = RetryPolicy(backoff_multiplier=1e12)
    assert policy.get_delay_ms(2) == 3_600_000
    assert policy.get_delay_ms(400) == 3_600_000


def test_jitter_adds_up_to_half_the_delay():
    """Jitter stays within 0-50% on top of the delay."""
    policy = RetryPolicy(initial_delay_ms=1000, jitter=True)
    for _ in range(50):
        assert 1000 <= policy.get_delay_ms(1) <= 1500


def test_should_retry_until_max_retries():
    policy = RetryPolicy(max_retries=3)
    assert policy.should_retry(1)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)


def test_policy_from_job():
    """A job's own backoff settings drive its policy."""
    job = Job(
        id="sms_1",
        type="sms",
        created_at="2026-03-02T09:00:00+00:00",
        max_retries=5,
        initial_delay_ms=200,
        backoff_multiplier=3,
    )
    policy = RetryPolicy.for_job(job, max_delay_ms=1000)

    assert policy.max_retries == 5
    assert policy.get_delay_ms(2) == 600
    assert policy.get_delay_ms(3) == 1000
