"""
Retry eligibility policy and step failure classification.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates the "may this failed step run again, and when?"
decision as a pure function, so readiness evaluation, the finalizer and
tests all share one definition of retry timing.

Rules, evaluated in order:
1. attempts >= retry_limit                → not eligible, terminal
2. attempts > 0 and not retryable         → not eligible, terminal
3. no prior failure                       → eligible immediately
4. explicit backoff + last_attempted_at   → eligible at last_attempted_at + backoff
5. otherwise                              → eligible at last_failure_at + min(2^attempts, 30s)
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, NamedTuple, cast


class RetryDecision(NamedTuple):
    """Outcome of a retry eligibility check.

    Unpacks as ``(eligible, next_retry_at)``.
    """

    eligible: bool
    """True if the step may be attempted at the evaluated instant."""

    next_retry_at: datetime | None
    """Earliest instant the step becomes eligible, None if immediate or never."""

    terminal: bool = False
    """True if no further attempt will ever be eligible."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Default retry timing used during readiness evaluation.

    Examples:
        # The formula readiness polling uses: min(2^attempts, 30) seconds
        policy = RetryPolicy.DEFAULT

        decision = policy.eligible(
            attempts=1,
            retry_limit=3,
            retryable=True,
            last_failure_at=failed_at,
            backoff_request_seconds=None,
            last_attempted_at=failed_at,
            now=datetime.now(UTC),
        )
        if decision.eligible:
            ...
    """

    exponent_base: int = 2
    """Base of the exponential backoff (delay = base^attempts seconds)."""

    max_backoff_seconds: float = 30.0
    """Cap applied to the exponential backoff."""

    jitter_percentage: float = 0.0
    """Symmetric jitter applied to the exponential delay (0.0 disables).

    In-process executors may enable up to ±20% to avoid thundering herds;
    readiness polling keeps it at zero so verdicts are reproducible.
    """

    if TYPE_CHECKING:
        DEFAULT: RetryPolicy
        JITTERED: RetryPolicy
    else:
        DEFAULT = cast("RetryPolicy", None)
        JITTERED = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        if self.exponent_base < 1:
            raise ValueError(f"exponent_base must be >= 1, got {self.exponent_base}")
        if self.max_backoff_seconds < 0:
            raise ValueError(f"max_backoff_seconds must be >= 0, got {self.max_backoff_seconds}")
        if not 0.0 <= self.jitter_percentage <= 0.2:
            raise ValueError(
                f"jitter_percentage must be within [0.0, 0.2], got {self.jitter_percentage}"
            )

    def delay_for_attempts(self, attempts: int) -> float:
        """
        Exponential delay (seconds) after a failure at the given attempt count.

        Args:
            attempts: Number of attempts made so far

        Returns:
            min(exponent_base^attempts, max_backoff_seconds), with jitter if enabled

        Example:
            RetryPolicy.DEFAULT.delay_for_attempts(1)  # 2.0
            RetryPolicy.DEFAULT.delay_for_attempts(5)  # 30.0 (capped)
        """
        delay = float(min(self.exponent_base ** max(attempts, 0), self.max_backoff_seconds))
        if self.jitter_percentage:
            spread = delay * self.jitter_percentage
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay

    def eligible(
        self,
        attempts: int,
        retry_limit: int,
        retryable: bool,
        last_failure_at: datetime | None,
        backoff_request_seconds: float | None,
        last_attempted_at: datetime | None,
        now: datetime,
    ) -> RetryDecision:
        """
        Decide whether a step may be attempted at ``now``.

        Pure function of its inputs (apart from optional jitter).

        Args:
            attempts: Attempts made so far
            retry_limit: Maximum number of attempts
            retryable: Whether the step may be retried after a failure
            last_failure_at: Timestamp of the most recent transition into error
            backoff_request_seconds: Explicit backoff override (e.g. Retry-After)
            last_attempted_at: Timestamp of the most recent attempt
            now: Instant to evaluate eligibility at

        Returns:
            RetryDecision(eligible, next_retry_at, terminal)
        """
        if attempts >= retry_limit:
            return RetryDecision(False, None, terminal=True)

        if attempts > 0 and not retryable:
            return RetryDecision(False, None, terminal=True)

        if last_failure_at is None:
            return RetryDecision(True, None)

        if backoff_request_seconds is not None and last_attempted_at is not None:
            next_retry_at = last_attempted_at + timedelta(seconds=backoff_request_seconds)
            return RetryDecision(now >= next_retry_at, next_retry_at)

        next_retry_at = last_failure_at + timedelta(seconds=self.delay_for_attempts(attempts))
        return RetryDecision(now >= next_retry_at, next_retry_at)

    def exhausted(self, attempts: int, retry_limit: int, retryable: bool) -> bool:
        """Returns True if no further attempt can ever be eligible."""
        return attempts >= retry_limit or (attempts > 0 and not retryable)


RetryPolicy.DEFAULT = RetryPolicy()

RetryPolicy.JITTERED = RetryPolicy(jitter_percentage=0.2)


# =============================================================================
# Step failure classification
# =============================================================================


class PermanentError(Exception):
    """
    Step failure that must never be retried.

    Raising this from a step handler marks the step non-retryable, so the
    finalizer blocks the task in ERROR after this attempt.

    Example:
        class InsufficientFunds(PermanentError):
            pass

        raise InsufficientFunds("card declined")
    """

    def is_retryable(self) -> bool:
        return False


class RetryableError(Exception):
    """
    Step failure that should be retried per policy.

    Optionally carries an explicit ``retry_after`` hint: seconds (int/float)
    or a raw ``Retry-After`` header value (integer seconds or HTTP date).
    The hint is honored verbatim (capped by the backoff configuration).

    Example:
        raise RetryableError("rate limited", retry_after=response.headers["Retry-After"])
    """

    def __init__(self, message: str = "", retry_after: float | str | None = None):
        super().__init__(message)
        self.retry_after = retry_after

    def is_retryable(self) -> bool:
        return True


__all__ = [
    "RetryPolicy",
    "RetryDecision",
    "PermanentError",
    "RetryableError",
]
