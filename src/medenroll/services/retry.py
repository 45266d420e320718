"""
Retry / Backoff Policy.

Explicit, test-visible exponential backoff shared by the document pipeline
(extraction) and the notification dispatcher (webhook delivery). Each
external dependency gets its own parameters; the sleep function is
injectable so tests can observe delays without waiting them out.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Awaitable, Callable

from medenroll.core.config import EnrollmentSettings

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``min(base * factor ** (n - 1), cap)`` after failure n."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    factor: float = 2.0
    cap_seconds: float = 30.0
    sleep: Sleeper = field(default=asyncio.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.cap_seconds < 0:
            raise ValueError("delays must be non-negative")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")

    def delay_for(self, failures: int) -> float:
        """Delay to wait after the given number of consecutive failures."""
        if failures < 1:
            return 0.0
        return min(self.base_delay_seconds * self.factor ** (failures - 1), self.cap_seconds)

    def schedule(self) -> list[float]:
        """All delays a fully failing operation would wait, in order."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    async def wait(self, failures: int) -> float:
        delay = self.delay_for(failures)
        if delay > 0:
            await self.sleep(delay)
        return delay

    @classmethod
    def for_extraction(cls, settings: EnrollmentSettings, sleep: Sleeper = asyncio.sleep) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.EXTRACTION_MAX_ATTEMPTS,
            base_delay_seconds=settings.EXTRACTION_BACKOFF_BASE_SECONDS,
            factor=settings.EXTRACTION_BACKOFF_FACTOR,
            cap_seconds=settings.EXTRACTION_BACKOFF_CAP_SECONDS,
            sleep=sleep,
        )

    @classmethod
    def for_notifications(cls, settings: EnrollmentSettings, sleep: Sleeper = asyncio.sleep) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.NOTIFICATION_MAX_ATTEMPTS,
            base_delay_seconds=settings.NOTIFICATION_BACKOFF_BASE_SECONDS,
            factor=settings.NOTIFICATION_BACKOFF_FACTOR,
            cap_seconds=settings.NOTIFICATION_BACKOFF_CAP_SECONDS,
            sleep=sleep,
        )


def with_retry(
    policy: BackoffPolicy,
    exceptions: tuple = (Exception,),
):
    """Decorator for retry logic with the policy's exponential backoff."""

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(1, policy.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if policy.should_retry(attempt):
                        delay = policy.delay_for(attempt)
                        logger.warning(
                            f"Attempt {attempt}/{policy.max_attempts} failed: {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        await policy.wait(attempt)
                    else:
                        logger.error(
                            f"All {policy.max_attempts} attempts failed. Last error: {e}"
                        )

            raise last_exception

        return wrapper

    return decorator
