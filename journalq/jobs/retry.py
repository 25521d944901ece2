"""
Failure classification and exponential backoff for job retries.
"""

import asyncio
import random
from typing import Optional

from journalq.config import AppConfig, config as default_config
from journalq.jobs.errors import NonRetryableJobError, RetryableJobError


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})
PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 409, 413, 422})

# Substrings that mark a transient upstream failure
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "connection",
    "reset by peer",
    "temporarily",
    "overloaded",
    "429",
    "502",
    "503",
    "504",
)


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


class RetryPolicy:
    """
    Decides whether a handler failure is worth another attempt and how long
    to wait before the job becomes claimable again.

    delay = min(max_delay, base * factor ** (attempts - 1)), shaved by up to
    ``jitter`` of itself so jobs that failed together do not retry together.
    """

    def __init__(
        self,
        base_delay: float = 2.0,
        factor: float = 2.0,
        max_delay: float = 10.0,
        jitter: float = 0.1,
        rng: Optional[random.Random] = None
    ):
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, settings: Optional[AppConfig] = None) -> "RetryPolicy":
        settings = settings or default_config
        return cls(
            base_delay=settings.RETRY_BASE_DELAY,
            factor=settings.RETRY_FACTOR,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, RetryableJobError):
            return True
        if isinstance(error, NonRetryableJobError):
            return False
        if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return True

        status = _status_code(error)
        if status is not None:
            if status in RETRYABLE_STATUS_CODES or status >= 500:
                return True
            if status in PERMANENT_STATUS_CODES:
                return False

        # Malformed input and authorization problems never heal on their own
        if isinstance(error, (ValueError, TypeError, KeyError, PermissionError)):
            return False

        message = str(error).lower()
        return any(marker in message for marker in TRANSIENT_MARKERS)

    def delay_for(self, attempts: int, base: Optional[float] = None) -> float:
        """Seconds to wait after the ``attempts``-th failed attempt."""
        base = self.base_delay if base is None else base
        exponent = max(0, attempts - 1)
        delay = min(self.max_delay, base * (self.factor ** exponent))
        if self.jitter and delay > 0:
            delay *= 1 - self._rng.uniform(0, self.jitter)
        return delay
