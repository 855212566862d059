"""
Active retry scheduling: backoff calculation and Retry-After parsing.

Readiness polling uses RetryPolicy's fixed ``min(2^attempts, 30)`` formula.
When a handler raises RetryableError the executor instead asks
BackoffCalculator for an explicit delay, which is stored on the step as
``backoff_request_seconds`` and then takes precedence during readiness.

Server-supplied Retry-After hints win verbatim (capped by
``max_backoff_seconds``); otherwise the configured progression is used with
optional jitter.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from email.utils import parsedate_to_datetime

from pyconductor.config import BackoffConfig
from pyconductor.models import utc_now

logger = logging.getLogger(__name__)

__all__ = ["BackoffCalculator", "RetryHeaderParser", "MAX_REASONABLE_RETRY_AFTER"]

MAX_REASONABLE_RETRY_AFTER = 3600


class RetryHeaderParser:
    """Parses HTTP ``Retry-After`` values into seconds.

    Accepts either delay-seconds (``"120"``) or an HTTP date
    (``"Wed, 21 Oct 2015 07:28:00 GMT"``).
    """

    def parse(self, value: str | int | float | None, now: datetime | None = None) -> float:
        """
        Convert a Retry-After value to seconds from ``now``.

        Args:
            value: Header value, or a number of seconds
            now: Reference instant for HTTP dates (defaults to current UTC time)

        Returns:
            Seconds to wait (HTTP dates in the past yield 0)

        Raises:
            ValueError: If the value is negative or cannot be parsed
        """
        if value is None:
            return 0.0

        if isinstance(value, int | float):
            seconds = float(value)
        else:
            text = value.strip()
            if not text:
                return 0.0
            if text.lstrip("-").isdigit():
                seconds = float(int(text))
            else:
                seconds = self._parse_http_date(text, now or utc_now())

        self._validate(seconds)
        return seconds

    def _parse_http_date(self, text: str, now: datetime) -> float:
        try:
            retry_at = parsedate_to_datetime(text)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Failed to parse Retry-After header: {text!r}") from e
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=now.tzinfo)
        return max(float(int((retry_at - now).total_seconds())), 0.0)

    def _validate(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError(f"Retry-After resulted in negative wait time: {seconds}")
        if seconds > MAX_REASONABLE_RETRY_AFTER:
            logger.warning(
                f"Retry-After requests {seconds:.0f} seconds "
                f"(more than {MAX_REASONABLE_RETRY_AFTER}s)"
            )


class BackoffCalculator:
    """
    Computes the explicit backoff stored on a step after a RetryableError.

    Usage:
        calculator = BackoffCalculator(BackoffConfig())

        calculator.backoff_seconds(2)                     # 2s ± jitter
        calculator.backoff_seconds(2, retry_after="120")  # 120.0
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        parser: RetryHeaderParser | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or BackoffConfig()
        self._parser = parser or RetryHeaderParser()
        self._rng = rng or random.Random()

    def backoff_seconds(
        self,
        attempts: int,
        retry_after: str | int | float | None = None,
        now: datetime | None = None,
    ) -> float:
        """
        Delay before the next attempt.

        Args:
            attempts: Attempts made so far, including the one that just failed
            retry_after: Optional server hint (seconds or Retry-After header value)
            now: Reference instant for HTTP-date hints

        Returns:
            Seconds to wait before the step may run again

        Raises:
            ValueError: If ``retry_after`` is negative or unparseable
        """
        if retry_after is not None:
            seconds = min(self._parser.parse(retry_after, now), self.config.max_backoff_seconds)
            logger.debug(f"Using server-requested backoff of {seconds}s")
            return seconds
        return self.exponential_seconds(attempts)

    def exponential_seconds(self, attempts: int) -> float:
        """Configured progression for a 1-based attempt number, capped and jittered."""
        if attempts <= 0:
            return 0.0

        progression = self.config.default_backoff_seconds
        if attempts <= len(progression):
            base = float(progression[attempts - 1])
        else:
            base = float(int(attempts**self.config.backoff_multiplier))

        delay = min(base, self.config.max_backoff_seconds)

        if self.config.jitter_enabled:
            spread = round(delay * self.config.jitter_max_percentage)
            delay = max(delay + self._rng.randint(-spread, spread), 1.0)

        return delay
