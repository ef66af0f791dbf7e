from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict

from ..constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_RETRY_DELAY_SECONDS,
    DEFAULT_RETRY_DELAY_SECONDS,
)
from ..errors import FailureClass, classify_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_RETRY_DELAY_SECONDS,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    cap: float = DEFAULT_MAX_RETRY_DELAY_SECONDS,
    jitter: float = 0.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = min(base * multiplier ** (attempt - 1), cap)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


class RetryPolicy(BaseModel):
    """Bounded retry with a fixed (or multiplied) inter-attempt delay."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_delay_seconds: float = DEFAULT_MAX_RETRY_DELAY_SECONDS

    def delay_for(self, attempt: int) -> float:
        return compute_backoff(
            attempt,
            base=self.delay_seconds,
            multiplier=self.backoff_multiplier,
            cap=self.max_delay_seconds,
        )


class RetryResult(BaseModel, Generic[T]):
    """Outcome of :func:`execute_with_retry`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int
    failure_class: Optional[FailureClass] = None

    @property
    def exhausted(self) -> bool:
        """``True`` when a transient failure used up every attempt."""
        return not self.success and self.failure_class is FailureClass.TRANSIENT


async def schedule_retry(delay: float) -> None:
    """Sleep before the next attempt."""
    await asyncio.sleep(delay)


async def execute_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    label: str = "operation",
) -> RetryResult[T]:
    """Run ``fn`` until it succeeds, fails permanently, or attempts run out.

    Permanent failures return after a single attempt. Transient failures are
    retried up to ``policy.max_attempts`` times in total.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            data = await fn()
        except Exception as exc:
            failure_class = classify_failure(exc)
            if failure_class is FailureClass.PERMANENT or attempt >= policy.max_attempts:
                logger.error(
                    f"[{label}] failed after {attempt} attempt(s) ({failure_class.value}): {exc}"
                )
                return RetryResult(
                    success=False,
                    error=exc,
                    attempts=attempt,
                    failure_class=failure_class,
                )
            delay = policy.delay_for(attempt)
            logger.warning(
                f"[{label}] attempt {attempt}/{policy.max_attempts} failed: {exc}. "
                f"Retrying in {delay:g}s"
            )
            await schedule_retry(delay)
            continue

        if attempt > 1:
            logger.info(f"[{label}] recovered after {attempt} attempts")
        return RetryResult(success=True, data=data, attempts=attempt)
