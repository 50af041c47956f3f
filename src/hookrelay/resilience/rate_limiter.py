"""Token bucket rate limiting for outbound calls.

Each downstream resource gets its own named bucket, owned by a
``RateLimiter`` that the application constructs once and passes to the
components that need it.

Features:
- In-process buckets guarded by an asyncio lock
- Redis-backed buckets for limits shared by several processes
- ``acquire`` suspends only the calling task while it waits for tokens
- Every wait is bounded; over-capacity requests fail fast
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from hookrelay.errors import RateLimitConfigError, RateLimitExceeded

logger = structlog.get_logger(__name__)

# Default bound on how long acquire() waits for tokens
DEFAULT_MAX_WAIT_SECONDS = 60.0


@dataclass(frozen=True)
class BucketConfig:
    """Configuration for one named bucket.

    Attributes:
        capacity: Maximum number of tokens in the bucket.
        refill_rate: Tokens added per second.
    """

    capacity: int
    refill_rate: float

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise RateLimitConfigError(f"Bucket capacity must be positive, got {self.capacity}")
        if self.refill_rate <= 0:
            raise RateLimitConfigError(
                f"Bucket refill rate must be positive, got {self.refill_rate}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BucketConfig":
        return cls(capacity=int(data["capacity"]), refill_rate=float(data["refill_rate"]))


class Bucket(ABC):
    """Common acquire loop over a refill-and-take primitive."""

    def __init__(self, name: str, config: BucketConfig) -> None:
        self.name = name
        self.config = config

    @property
    def capacity(self) -> int:
        return self.config.capacity

    @property
    def refill_rate(self) -> float:
        return self.config.refill_rate

    @abstractmethod
    async def try_consume(self, tokens: float = 1) -> float:
        """Refill, then take ``tokens`` if available.

        Returns:
            0.0 if the tokens were taken, otherwise the seconds until enough
            tokens will have accumulated.
        """

    async def consume(self, tokens: float = 1) -> bool:
        """Try to consume tokens without waiting.

        Returns:
            True if tokens were consumed, False if insufficient tokens.
        """
        self._check_request(tokens)
        return await self.try_consume(tokens) == 0.0

    async def acquire(self, tokens: float = 1, *, timeout: float | None = None) -> float:
        """Wait until ``tokens`` are available, then take them.

        Args:
            tokens: Tokens needed.
            timeout: Longest total wait in seconds.

        Returns:
            Seconds spent waiting.

        Raises:
            RateLimitConfigError: If ``tokens`` exceeds capacity.
            RateLimitExceeded: If the wait would exceed ``timeout``.
        """
        self._check_request(tokens)
        start = time.monotonic()

        while True:
            wait = await self.try_consume(tokens)
            waited = time.monotonic() - start
            if wait <= 0:
                if waited > 0:
                    logger.debug(
                        "rate_limit_acquired_after_wait",
                        bucket=self.name,
                        tokens=tokens,
                        waited_seconds=round(waited, 4),
                    )
                return waited

            if timeout is not None and waited + wait > timeout:
                logger.warning(
                    "rate_limit_wait_exceeded",
                    bucket=self.name,
                    tokens=tokens,
                    retry_after=wait,
                    timeout=timeout,
                )
                raise RateLimitExceeded(self.name, tokens, wait)

            await asyncio.sleep(wait)

    def _check_request(self, tokens: float) -> None:
        if tokens <= 0:
            raise RateLimitConfigError(f"Token request must be positive, got {tokens}")
        if tokens > self.capacity:
            raise RateLimitConfigError(
                f"Bucket {self.name} holds at most {self.capacity} tokens, "
                f"cannot ever satisfy a request for {tokens}"
            )


class TokenBucket(Bucket):
    """In-process token bucket.

    Tokens are added at a constant rate up to capacity and consumed by
    requests. Refill is always applied before a request is evaluated.
    """

    def __init__(
        self,
        name: str,
        config: BucketConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name, config)
        self._clock = clock
        self.tokens = float(config.capacity)
        self.last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def try_consume(self, tokens: float = 1) -> float:
        async with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return 0.0
            return (tokens - self.tokens) / self.refill_rate

    async def get_status(self) -> dict[str, Any]:
        """Get current bucket status."""
        async with self._lock:
            self._refill()
            return {
                "name": self.name,
                "tokens": self.tokens,
                "capacity": self.capacity,
                "refill_rate": self.refill_rate,
            }


# Refill and take in one atomic step. Uses the server clock so that every
# process sharing the bucket agrees on elapsed time. Returns the wait as a
# string because Redis truncates Lua numbers to integers.
_REDIS_BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local requested = tonumber(ARGV[3])
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - ts) * rate)
local wait = 0
if tokens >= requested then
  tokens = tokens - requested
else
  wait = (requested - tokens) / rate
end
redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[4]))
return tostring(wait)
"""


class RedisTokenBucket(Bucket):
    """Token bucket whose state lives in Redis.

    Example:
        from redis.asyncio import Redis

        redis = Redis.from_url("redis://localhost:6379")
        bucket = RedisTokenBucket("crm", BucketConfig(10, 5.0), redis)
        await bucket.acquire()
    """

    def __init__(
        self,
        name: str,
        config: BucketConfig,
        redis: Any,  # redis.asyncio.Redis
        *,
        key_prefix: str = "hookrelay:bucket:",
    ) -> None:
        super().__init__(name, config)
        self.key = f"{key_prefix}{name}"
        self._script = redis.register_script(_REDIS_BUCKET_SCRIPT)
        # Idle buckets expire once they would be full again anyway
        self._ttl_seconds = max(1, math.ceil(config.capacity / config.refill_rate) * 2)

    async def try_consume(self, tokens: float = 1) -> float:
        result = await self._script(
            keys=[self.key],
            args=[self.capacity, self.refill_rate, tokens, self._ttl_seconds],
        )
        if isinstance(result, bytes):
            result = result.decode()
        return max(0.0, float(result))


class RateLimiter:
    """Registry of named buckets, one per downstream resource.

    Example:
        limiter = RateLimiter()
        limiter.register("crm", BucketConfig(capacity=10, refill_rate=2.0))

        await limiter.acquire("crm")
        response = await crm.call(request)
    """

    def __init__(
        self,
        buckets: dict[str, BucketConfig] | None = None,
        *,
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
        redis: Any | None = None,
    ) -> None:
        """Initialize rate limiter.

        Args:
            buckets: Initial bucket configurations by name.
            max_wait_seconds: Default bound on acquire waits.
            redis: Optional redis.asyncio client; buckets are then shared
                across processes.
        """
        self._buckets: dict[str, Bucket] = {}
        self._max_wait_seconds = max_wait_seconds
        self._redis = redis
        for name, config in (buckets or {}).items():
            self.register(name, config)

    def register(self, name: str, config: BucketConfig) -> Bucket:
        """Create a bucket for a resource.

        Re-registering with the same configuration returns the existing
        bucket; a different configuration is rejected so that resources with
        different quotas never share state.

        Raises:
            RateLimitConfigError: If the name is already bound to another config.
        """
        existing = self._buckets.get(name)
        if existing is not None:
            if existing.config != config:
                raise RateLimitConfigError(
                    f"Bucket {name} already registered with {existing.config}"
                )
            return existing

        bucket: Bucket
        if self._redis is not None:
            bucket = RedisTokenBucket(name, config, self._redis)
        else:
            bucket = TokenBucket(name, config)

        self._buckets[name] = bucket
        logger.info(
            "rate_limit_bucket_registered",
            bucket=name,
            capacity=config.capacity,
            refill_rate=config.refill_rate,
            backend=type(bucket).__name__,
        )
        return bucket

    def bucket(self, name: str) -> Bucket:
        """Get a registered bucket.

        Raises:
            KeyError: If no bucket has that name.
        """
        try:
            return self._buckets[name]
        except KeyError:
            raise KeyError(f"No rate limit bucket named {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._buckets

    async def acquire(
        self,
        bucket_name: str,
        tokens_needed: float = 1,
        *,
        timeout: float | None = None,
    ) -> float:
        """Wait for and deduct tokens from a named bucket.

        Args:
            bucket_name: Resource bucket.
            tokens_needed: Tokens to deduct.
            timeout: Longest wait; defaults to the limiter's max wait.

        Returns:
            Seconds spent waiting.
        """
        wait_limit = self._max_wait_seconds if timeout is None else timeout
        return await self.bucket(bucket_name).acquire(tokens_needed, timeout=wait_limit)

    async def get_status(self) -> dict[str, Any]:
        """Get status for every in-process bucket."""
        status: dict[str, Any] = {}
        for name, bucket in self._buckets.items():
            if isinstance(bucket, TokenBucket):
                status[name] = await bucket.get_status()
            else:
                status[name] = {
                    "name": name,
                    "capacity": bucket.capacity,
                    "refill_rate": bucket.refill_rate,
                    "backend": "redis",
                }
        return status
