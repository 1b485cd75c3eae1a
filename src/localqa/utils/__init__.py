"""Utility helpers for the localqa engine."""

from .retry import (
    RetryConfig,
    RetryResult,
    async_retry_with_backoff,
    calculate_delay,
    retry_with_backoff,
)

__all__ = [
    "RetryConfig",
    "RetryResult",
    "async_retry_with_backoff",
    "calculate_delay",
    "retry_with_backoff",
]
