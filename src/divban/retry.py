"""Bounded retry with exponential backoff."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_PATTERNS = (
    "resource temporarily unavailable",
    "connection refused",
    "connection reset",
    "timed out",
    "try again",
    "device or resource busy",
    "failed to connect to bus",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and delay schedule for :func:`retry_call`."""

    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 2.0
    factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retrying after *attempt* (1-based) failed."""
        return min(self.max_delay, self.base_delay * (self.factor ** (attempt - 1)))


def retry_call(
    fn: Callable[[], T],
    *,
    should_retry: Callable[[Exception], bool],
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call *fn* until it succeeds or the policy's attempts are spent.

    Only exceptions accepted by *should_retry* trigger another attempt; the
    last one is re-raised once the budget runs out.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            delay = policy.delay_for(attempt)
            LOGGER.debug(
                "%s failed on attempt %d/%d (%s); retrying in %.3fs",
                label,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            sleep(delay)
            attempt += 1


def is_transient_error(exc: Exception) -> bool:
    """Return ``True`` when *exc* looks like a short-lived system hiccup."""
    message = str(exc).lower()
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


__all__ = ["RetryPolicy", "is_transient_error", "retry_call"]
