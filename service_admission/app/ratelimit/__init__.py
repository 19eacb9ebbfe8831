"""
Rate limiting package for the admission pipeline.

Holds the in-process sharded token bucket and its Redis-backed counterpart;
both enforce per-identity request budgets with burst tolerance.
"""

from .redis_bucket import RedisTokenBucketRateLimiter
from .token_bucket import BucketSnapshot, Decision, TokenBucketRateLimiter

__all__ = [
    "BucketSnapshot",
    "Decision",
    "RedisTokenBucketRateLimiter",
    "TokenBucketRateLimiter",
]
