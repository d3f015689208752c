"""Redis-backed token bucket rate limiting for conditional profile writes."""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import structlog
from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from handshake.config import get_settings
from handshake.errors import RateLimited

logger = structlog.get_logger(__name__)

# Refill and consume in one atomic step so concurrent retries from the same
# address cannot both observe the same token.
TOKEN_BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local refill_per_second = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl_seconds = tonumber(ARGV[4])
local state = redis.call('HMGET', KEYS[1], 'tokens', 'updated_at')
local tokens = tonumber(state[1])
local updated_at = tonumber(state[2])
if tokens == nil or updated_at == nil then
  tokens = capacity
  updated_at = now
end
local elapsed = math.max(0, now - updated_at)
tokens = math.min(capacity, tokens + elapsed * refill_per_second)
local allowed = 0
local retry_after = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
else
  retry_after = (1 - tokens) / refill_per_second
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'updated_at', tostring(now))
redis.call('EXPIRE', KEYS[1], ttl_seconds)
return {allowed, tostring(retry_after)}
"""


class TokenBucketRedis(Protocol):
    """Protocol for the Redis operation used by the token bucket."""

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        """Run a Lua script atomically."""


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one token bucket consultation."""

    allowed: bool
    retry_after_seconds: float


@lru_cache
def get_rate_limit_redis_client() -> Redis:
    """Create and cache Redis client used by the rate limiter."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


class TokenBucketRateLimiter:
    """Per-client token bucket: `capacity` tokens refilled at `refill_per_second`."""

    def __init__(
        self,
        redis_client: TokenBucketRedis,
        capacity: int,
        refill_per_second: float,
        namespace: str = "profile",
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis_client
        self._capacity = capacity
        self._refill_per_second = refill_per_second
        self._namespace = namespace
        self._clock = clock or time.time
        self._ttl_seconds = math.ceil(capacity / refill_per_second) + 1

    async def consume(self, client_id: str) -> RateLimitDecision:
        """Take one token for the client; fail open when Redis is unavailable."""
        bucket_key = f"rate_limit:{self._namespace}:{client_id}"
        try:
            raw = await self._redis.eval(
                TOKEN_BUCKET_SCRIPT,
                1,
                bucket_key,
                self._capacity,
                self._refill_per_second,
                self._clock(),
                self._ttl_seconds,
            )
        except RedisError:
            logger.warning("rate_limit_backend_unavailable", namespace=self._namespace)
            return RateLimitDecision(allowed=True, retry_after_seconds=0.0)

        allowed, retry_after = raw
        return RateLimitDecision(allowed=int(allowed) == 1, retry_after_seconds=float(retry_after))

    async def enforce(self, client_id: str) -> None:
        """Consume a token or raise `RateLimited` with a Retry-After hint."""
        decision = await self.consume(client_id)
        if decision.allowed:
            return
        retry_after = max(1, math.ceil(decision.retry_after_seconds))
        logger.info("rate_limited", namespace=self._namespace, client_id=client_id)
        raise RateLimited(
            "Rate limit exceeded.",
            extra={"retryAfterSeconds": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


@lru_cache
def get_profile_rate_limiter() -> TokenBucketRateLimiter:
    """Create and cache the Stage 3 rate limiter from settings."""
    settings = get_settings()
    return TokenBucketRateLimiter(
        redis_client=get_rate_limit_redis_client(),
        capacity=settings.rate_limit.profile_bucket_capacity,
        refill_per_second=settings.rate_limit.profile_refill_per_second,
    )
