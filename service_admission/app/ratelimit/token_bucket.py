"""
Token bucket rate limiter for the admission pipeline.
"""

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from shared.config import RateLimitSettings
from shared.logging import get_logger


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check."""

    allowed: bool
    retry_after_seconds: float = 0.0
    limit: float = 0.0
    remaining: int = 0


@dataclass(frozen=True)
class BucketSnapshot:
    capacity: float
    tokens: float
    refill_rate: float
    last_refill: float


class TokenBucket:
    """Per-identity bucket state guarded by its own lock."""

    __slots__ = ("capacity", "refill_rate", "tokens", "last_refill", "last_seen", "evicted", "lock")

    def __init__(self, capacity: float, refill_rate: float, now: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = capacity
        self.last_refill = now
        self.last_seen = now
        self.evicted = False
        self.lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

    def consume(self, now: float) -> Decision:
        """Refill then try to take one token. Caller holds ``lock``."""
        self._refill(now)
        self.last_seen = max(self.last_seen, now)

        if self.tokens >= 1:
            self.tokens -= 1
            return Decision(
                allowed=True,
                limit=self.capacity,
                remaining=int(self.tokens),
            )

        if self.refill_rate > 0 and self.capacity >= 1:
            retry_after = (1 - self.tokens) / self.refill_rate
        else:
            retry_after = math.inf
        return Decision(
            allowed=False,
            retry_after_seconds=retry_after,
            limit=self.capacity,
            remaining=0,
        )

    def is_idle_and_full(self, now: float, idle_seconds: float) -> bool:
        if now - self.last_seen < idle_seconds:
            return False
        elapsed = max(0.0, now - self.last_refill)
        return self.tokens + elapsed * self.refill_rate >= self.capacity


class TokenBucketRateLimiter:
    """In-process token bucket limiter with per-identity isolation.

    Buckets live in a sharded map: a shard lock only guards lookup and
    creation, and every bucket carries its own lock for the refill/consume
    step. Requests from different identities therefore never wait on each
    other beyond a dictionary lookup.
    """

    def __init__(
        self,
        capacity: float = 60,
        refill_per_second: float = 1.0,
        *,
        idle_eviction_seconds: float = 300.0,
        shards: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        if refill_per_second < 0:
            raise ValueError("refill_per_second must be >= 0")
        if shards < 1:
            raise ValueError("shards must be >= 1")

        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self.idle_eviction_seconds = idle_eviction_seconds
        self.clock = clock
        self.logger = get_logger("admission.rate_limiter")

        self._shards: List[Dict[str, TokenBucket]] = [{} for _ in range(shards)]
        self._shard_locks = [threading.Lock() for _ in range(shards)]

    @classmethod
    def from_settings(cls, settings: RateLimitSettings, clock: Callable[[], float] = time.monotonic) -> "TokenBucketRateLimiter":
        return cls(
            settings.capacity,
            settings.refill_per_second,
            idle_eviction_seconds=settings.idle_eviction_seconds,
            shards=settings.shards,
            clock=clock,
        )

    def _shard_index(self, identity: str) -> int:
        return hash(identity) % len(self._shards)

    def _get_bucket(self, identity: str, now: float) -> TokenBucket:
        index = self._shard_index(identity)
        with self._shard_locks[index]:
            bucket = self._shards[index].get(identity)
            if bucket is None:
                bucket = TokenBucket(self.capacity, self.refill_per_second, now)
                self._shards[index][identity] = bucket
            return bucket

    def admit(self, identity: str) -> Decision:
        """Decide whether ``identity`` may proceed, consuming one token if so."""
        while True:
            now = self.clock()
            bucket = self._get_bucket(identity, now)
            with bucket.lock:
                # Lost a race with the eviction sweep; look the bucket up again.
                if bucket.evicted:
                    continue
                decision = bucket.consume(now)
            break

        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=identity,
                limit=decision.limit,
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision

    def snapshot(self, identity: str) -> Optional[BucketSnapshot]:
        """Current bucket state for ``identity`` refilled to now, or None."""
        index = self._shard_index(identity)
        with self._shard_locks[index]:
            bucket = self._shards[index].get(identity)
        if bucket is None:
            return None

        now = self.clock()
        with bucket.lock:
            elapsed = max(0.0, now - bucket.last_refill)
            tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
            return BucketSnapshot(
                capacity=bucket.capacity,
                tokens=tokens,
                refill_rate=bucket.refill_rate,
                last_refill=bucket.last_refill,
            )

    def reset(self, identity: str) -> bool:
        """Drop the bucket for ``identity``; the next request starts full."""
        index = self._shard_index(identity)
        with self._shard_locks[index]:
            bucket = self._shards[index].pop(identity, None)
            if bucket is None:
                return False
            with bucket.lock:
                bucket.evicted = True

        self.logger.info("Rate limit reset", client_id=identity)
        return True

    def bucket_count(self) -> int:
        total = 0
        for index, shard in enumerate(self._shards):
            with self._shard_locks[index]:
                total += len(shard)
        return total

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Remove buckets idle past the eviction window.

        Only buckets that would already be full are removed, so eviction
        never hands a client more tokens than waiting would have.
        """
        if now is None:
            now = self.clock()

        evicted = 0
        for index, shard in enumerate(self._shards):
            with self._shard_locks[index]:
                for identity in list(shard):
                    bucket = shard[identity]
                    with bucket.lock:
                        if not bucket.is_idle_and_full(now, self.idle_eviction_seconds):
                            continue
                        bucket.evicted = True
                    del shard[identity]
                    evicted += 1

        if evicted:
            self.logger.debug("Evicted idle rate limit buckets", evicted=evicted)
        return evicted

    async def eviction_loop(self, interval_seconds: float, on_sweep: Optional[Callable[[int], None]] = None) -> None:
        """Run :meth:`evict_idle` every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.evict_idle()
                if on_sweep is not None:
                    on_sweep(self.bucket_count())
            except Exception as e:
                self.logger.error("Rate limit eviction sweep failed", error=str(e), exc_info=True)
