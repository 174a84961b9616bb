"""
Retry Policy: Increasing Backoff for Store Round-Trips

Implements the reconciler's retry strategy:
- Linear backoff (default): base × (attempt + 1), i.e. 100ms, 200ms, ...
- Exponential backoff: base × 2^attempt
- Optional full jitter: random(0, backoff)
- Capped at max_delay_ms

Only errors that declare themselves retryable (TransientStoreError) are
retried. Validation and not-found errors return on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from lapcounter.core import constants as C
from lapcounter.core.config import ReconcilerConfig
from lapcounter.core.errors import LapCounterError
from lapcounter.core.types import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class BackoffStrategy(Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_DELAY_MS
    strategy: BackoffStrategy = BackoffStrategy.LINEAR
    jitter: bool = False

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt."""
        return cls(max_attempts=1)

    @classmethod
    def immediate(cls, max_attempts: int = C.RETRY_MAX_ATTEMPTS) -> RetryPolicy:
        """Retries without waiting (tests, local tooling)."""
        return cls(max_attempts=max_attempts, base_delay_ms=0)

    @classmethod
    def from_config(cls, config: ReconcilerConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.backoff_ms,
            max_delay_ms=config.max_backoff_ms,
            strategy=BackoffStrategy(config.backoff_strategy),
        )

    def delay_ms(self, attempt: int) -> float:
        """Delay after the zero-based `attempt` failed."""
        return calculate_backoff(
            attempt=attempt,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            strategy=self.strategy,
            jitter=self.jitter,
        )


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    strategy: BackoffStrategy = BackoffStrategy.LINEAR,
    jitter: bool = False,
) -> float:
    """
    Backoff delay in milliseconds.

    Linear:      min(cap, base * (attempt + 1))
    Exponential: min(cap, base * 2^attempt)
    Full jitter: random(0, delay)
    """
    if strategy is BackoffStrategy.EXPONENTIAL:
        delay = base_delay_ms * (2 ** attempt)
    else:
        delay = base_delay_ms * (attempt + 1)
    delay = min(max_delay_ms, delay)

    if jitter:
        delay = random.uniform(0, delay)

    return float(delay)


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    failed_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[LapCounterError] = None


async def retry_with_backoff(
    func: Callable[[], Awaitable[Result[T, LapCounterError]]],
    policy: Optional[RetryPolicy] = None,
    stats: Optional[RetryStats] = None,
    sleep: Sleep = asyncio.sleep,
) -> Result[T, LapCounterError]:
    """
    Run a Result-returning coroutine until it succeeds or stops being retryable.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        policy: Retry configuration (default if None)
        stats: Filled in with attempt counts when given
        sleep: Awaitable delay in seconds

    Returns:
        The first Ok, the first non-retryable Err, or the last Err once
        attempts are exhausted
    """
    if policy is None:
        policy = RetryPolicy.default()
    if stats is None:
        stats = RetryStats()

    attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        stats.total_attempts += 1
        last = await func()
        if last.is_ok():
            return last

        error = last.error
        stats.failed_attempts += 1
        stats.last_error = error
        if not error.retryable:
            return last

        if attempt + 1 >= attempts:
            return last

        delay = policy.delay_ms(attempt)
        stats.total_delay_ms += delay
        logger.warning(
            "Retrying after transient failure",
            extra={"attempt": attempt + 1, "delay_ms": delay, "error": str(error)},
        )
        await sleep(delay / 1000)
        attempt += 1
