"""
processing/retry.py
===================
Reusable retry policy.

A RetryPolicy bundles the three decisions every retry loop makes:
how many attempts, how long to wait before the next one, and which
exceptions are worth another attempt. Anything the predicate rejects is
re-raised immediately; the last retryable error is re-raised once the
attempts run out.

Usage:
    policy = RetryPolicy(
        max_attempts=3,
        delay=fixed_delay(2.0),
        retryable=lambda exc: isinstance(exc, DecompressionError),
    )
    body = policy.call(lambda: fetch_and_gunzip(bucket, key), description=key)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def fixed_delay(seconds: float) -> Callable[[int], float]:
    """Same wait before every retry."""
    return lambda attempt: seconds


def exponential_backoff(base: float, cap: float) -> Callable[[int], float]:
    """base, 2*base, 4*base ... capped at `cap` seconds."""
    return lambda attempt: min(base * (2 ** (attempt - 1)), cap)


def _retry_everything(exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: Callable[[int], float] = field(default_factory=lambda: fixed_delay(2.0))
    retryable: Callable[[BaseException], bool] = _retry_everything
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def call(
        self,
        fn: Callable[[], T],
        description: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Run `fn` until it succeeds, raises a non-retryable error, or the
        attempts are exhausted. `on_retry(attempt, exc)` fires before each
        wait, after the failed attempt number `attempt`.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if not self.retryable(exc):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        "%s failed after %d attempt(s): %s",
                        description, attempt, exc,
                    )
                    raise
                wait = self.delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.1fs.",
                    description, attempt, self.max_attempts, exc, wait,
                )
                if on_retry is not None:
                    on_retry(attempt, exc)
                self.sleep(wait)

        # Unreachable: the loop either returns or raises.
        raise RuntimeError(f"{description}: retry loop exited without a result")
