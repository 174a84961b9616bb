"""Retry and backoff for store round-trips."""

from lapcounter.reliability.retry import (
    BackoffStrategy,
    RetryPolicy,
    RetryStats,
    calculate_backoff,
    retry_with_backoff,
)

__all__ = [
    "BackoffStrategy",
    "RetryPolicy",
    "RetryStats",
    "calculate_backoff",
    "retry_with_backoff",
]
