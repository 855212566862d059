"""Tests for RetryPolicy eligibility rules, applied in order."""

from datetime import UTC, datetime, timedelta

import pytest

from pyconductor import PermanentError, RetryableError, RetryPolicy

T = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)


def eligible(policy=RetryPolicy.DEFAULT, **overrides):
    args = {
        "attempts": 1,
        "retry_limit": 3,
        "retryable": True,
        "last_failure_at": T,
        "backoff_request_seconds": None,
        "last_attempted_at": T,
        "now": T,
    }
    args.update(overrides)
    return policy.eligible(**args)


def test_attempts_at_limit_is_terminal():
    decision = eligible(attempts=3, retry_limit=3, now=T + timedelta(hours=1))

    assert decision == (False, None, True)


def test_non_retryable_after_first_attempt_is_terminal():
    decision = eligible(retryable=False, now=T + timedelta(hours=1))

    assert not decision.eligible
    assert decision.terminal


def test_non_retryable_before_any_attempt_may_run():
    decision = eligible(attempts=0, retryable=False, last_failure_at=None, last_attempted_at=None)

    assert decision.eligible
    assert decision.next_retry_at is None


def test_no_failure_is_eligible_immediately():
    eligible_now, next_retry_at = eligible(last_failure_at=None)[:2]

    assert eligible_now
    assert next_retry_at is None


def test_explicit_backoff_counts_from_last_attempt():
    # Failure recorded later than the attempt; the explicit override still
    # measures from last_attempted_at.
    decision = eligible(
        backoff_request_seconds=5,
        last_attempted_at=T,
        last_failure_at=T + timedelta(seconds=1),
        now=T + timedelta(seconds=4),
    )

    assert not decision.eligible
    assert decision.next_retry_at == T + timedelta(seconds=5)
    assert not decision.terminal


def test_explicit_backoff_boundary_is_inclusive():
    decision = eligible(backoff_request_seconds=5, now=T + timedelta(seconds=5))

    assert decision.eligible


def test_explicit_backoff_ignored_without_last_attempt():
    decision = eligible(backoff_request_seconds=60, last_attempted_at=None)

    # falls through to the default formula: 2^1 = 2 seconds
    assert decision.next_retry_at == T + timedelta(seconds=2)


@pytest.mark.parametrize(
    "attempts,delay",
    [(1, 2), (2, 4), (3, 8), (4, 16), (5, 30), (9, 30)],
)
def test_default_exponential_backoff(attempts, delay):
    decision = eligible(attempts=attempts, retry_limit=10)

    assert decision.next_retry_at == T + timedelta(seconds=delay)
    assert not decision.eligible
    assert eligible(attempts=attempts, retry_limit=10, now=T + timedelta(seconds=delay)).eligible


def test_delay_for_attempts():
    assert RetryPolicy.DEFAULT.delay_for_attempts(0) == 1.0
    assert RetryPolicy.DEFAULT.delay_for_attempts(3) == 8.0
    assert RetryPolicy.DEFAULT.delay_for_attempts(10) == 30.0


def test_jitter_stays_within_twenty_percent():
    for _ in range(50):
        delay = RetryPolicy.JITTERED.delay_for_attempts(3)
        assert 8 * 0.8 <= delay <= 8 * 1.2


def test_jitter_above_twenty_percent_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(jitter_percentage=0.5)


def test_exhausted():
    policy = RetryPolicy.DEFAULT

    assert policy.exhausted(3, 3, True)
    assert policy.exhausted(1, 3, False)
    assert not policy.exhausted(0, 3, False)
    assert not policy.exhausted(2, 3, True)


def test_failure_classification():
    assert not PermanentError("declined").is_retryable()
    error = RetryableError("rate limited", retry_after="30")
    assert error.is_retryable()
    assert error.retry_after == "30"
    assert str(error) == "rate limited"
