"""Retry policy for upstream calls.

The policy decides *whether* a failed call is retried and *how long* to wait;
the upstream client owns the loop.  Keeping the decision in one object makes
backoff behaviour testable without any network I/O.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping

from src.exporter.errors import RateLimitedError, ServerError

logger = logging.getLogger("fitbit_exporter.retry")


def _default_retryable(exc: Exception) -> bool:
    return isinstance(exc, (RateLimitedError, ServerError))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with an upstream-hint override.

    Attributes:
        max_attempts: Total attempts per request, including the first.
        base_delay:   Delay before the second attempt, in seconds.
        max_delay:    Cap for computed delays (upstream hints are not capped).
        jitter:       Scale computed delays by a random factor in [0.8, 1.2].
        retryable:    Predicate selecting which errors are retried.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = True
    retryable: Callable[[Exception], bool] = _default_retryable

    def should_retry(self, exc: Exception, attempt: int) -> bool:
        """Return True if ``attempt`` (1-based) failing with ``exc`` earns another try."""
        return attempt < self.max_attempts and self.retryable(exc)

    def backoff(self, attempt: int) -> float:
        """Computed delay after the given failed attempt (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.jitter:
            delay *= random.uniform(0.8, 1.2)
        return min(delay, self.max_delay)

    def delay_for(self, exc: Exception, attempt: int) -> float:
        """Seconds to wait before the next attempt.

        A rate-limit hint from the upstream is a floor: the wait is never
        shorter than what the server asked for.
        """
        delay = self.backoff(attempt)
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            delay = max(exc.retry_after, delay)
        return delay

    @classmethod
    def from_config(cls, cfg) -> RetryPolicy:
        """Build a policy from an ``ExporterConfig.retry`` section."""
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay_ms / 1000.0,
            max_delay=cfg.max_delay_ms / 1000.0,
            jitter=cfg.jitter,
        )


def parse_retry_after(headers: Mapping[str, str], now: datetime | None = None) -> float | None:
    """Extract a wait hint in seconds from response headers.

    Understands ``Retry-After`` (delta-seconds or HTTP date) and Fitbit's
    ``Fitbit-Rate-Limit-Reset`` (seconds until the hourly window resets).
    Returns None when neither header is usable.
    """
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value:
        value = value.strip()
        try:
            return max(float(value), 0.0)
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.warning("Unparseable Retry-After header: %r", value)
        else:
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            current = now or datetime.now(timezone.utc)
            return max((when - current).total_seconds(), 0.0)

    reset = headers.get("fitbit-rate-limit-reset") or headers.get("Fitbit-Rate-Limit-Reset")
    if reset:
        try:
            return max(float(reset), 0.0)
        except ValueError:
            logger.warning("Unparseable Fitbit-Rate-Limit-Reset header: %r", reset)
    return None
