"""Resilience patterns for outbound calls.

This module contains:
- Token bucket rate limiting per downstream resource
- Retry executor with exponential backoff, jitter and deadlines
"""

from hookrelay.resilience.rate_limiter import (
    DEFAULT_MAX_WAIT_SECONDS,
    Bucket,
    BucketConfig,
    RateLimiter,
    RedisTokenBucket,
    TokenBucket,
)
from hookrelay.resilience.retry import (
    DEFAULT_RETRY_POLICY,
    AttemptOutcome,
    RetryAttempt,
    RetryExecutor,
    RetryPolicy,
)

__all__ = [
    # Rate limiter
    "DEFAULT_MAX_WAIT_SECONDS",
    "Bucket",
    "BucketConfig",
    "RateLimiter",
    "RedisTokenBucket",
    "TokenBucket",
    # Retry
    "DEFAULT_RETRY_POLICY",
    "AttemptOutcome",
    "RetryAttempt",
    "RetryExecutor",
    "RetryPolicy",
]
