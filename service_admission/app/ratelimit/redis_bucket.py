"""
Distributed token bucket rate limiter backed by Redis.
"""

import math
import time
from typing import Any, Callable, Optional

import redis.asyncio as redis

from shared.logging import get_logger

from .token_bucket import Decision

# KEYS[1] bucket hash; ARGV: capacity, refill rate, now, ttl seconds.
# Returns {allowed, tokens * 1000, retry_after * 1000}.
TOKEN_BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil then
  tokens = capacity
  ts = now
end

local elapsed = now - ts
if elapsed < 0 then
  elapsed = 0
end
tokens = math.min(capacity, tokens + elapsed * rate)
if elapsed > 0 then
  ts = now
end

local allowed = 0
local retry_after = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
elseif rate > 0 and capacity >= 1 then
  retry_after = (1 - tokens) / rate
else
  retry_after = -1
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', ts)
redis.call('EXPIRE', KEYS[1], ttl)
return {allowed, math.floor(tokens * 1000), math.floor(retry_after * 1000)}
"""


class RedisTokenBucketRateLimiter:
    """Token bucket limiter whose buckets live in Redis.

    The refill-and-consume step runs as a single Lua script, so admission is
    atomic per key across every gateway replica. Idle buckets expire through
    the key TTL instead of a sweep.
    """

    def __init__(
        self,
        redis_url: str,
        capacity: float = 60,
        refill_per_second: float = 1.0,
        *,
        idle_eviction_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis_url = redis_url
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self.idle_eviction_seconds = idle_eviction_seconds
        self.clock = clock
        self.logger = get_logger("admission.rate_limiter.redis")
        self._redis: Optional[redis.Redis] = None
        self._script: Optional[Any] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _make_key(self, identity: str) -> str:
        """Generate rate limit key."""
        return f"rate_limit:{identity}"

    async def admit(self, identity: str) -> Decision:
        """Run one admission check in Redis. Fails open when Redis is down."""
        try:
            redis_client = await self._get_redis()
            if self._script is None:
                self._script = redis_client.register_script(TOKEN_BUCKET_SCRIPT)
            result = await self._script(
                keys=[self._make_key(identity)],
                args=[
                    self.capacity,
                    self.refill_per_second,
                    self.clock(),
                    max(1, int(math.ceil(self.idle_eviction_seconds))),
                ],
            )
        except Exception as e:
            self.logger.error("Rate limit check error", client_id=identity, error=str(e))
            return Decision(allowed=True, limit=self.capacity, remaining=int(self.capacity))

        allowed, tokens_milli, retry_milli = (int(value) for value in result)
        tokens = tokens_milli / 1000.0
        if allowed:
            return Decision(allowed=True, limit=self.capacity, remaining=int(tokens))

        retry_after = math.inf if retry_milli < 0 else retry_milli / 1000.0
        self.logger.warning(
            "Rate limit exceeded",
            client_id=identity,
            limit=self.capacity,
            retry_after_seconds=retry_after,
        )
        return Decision(allowed=False, retry_after_seconds=retry_after, limit=self.capacity, remaining=0)

    async def reset(self, identity: str) -> bool:
        """Reset rate limit for an identity."""
        try:
            redis_client = await self._get_redis()
            await redis_client.delete(self._make_key(identity))
            self.logger.info("Rate limit reset", client_id=identity)
            return True
        except Exception as e:
            self.logger.error("Rate limit reset error", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
