"""
Rate Limiting Module

Sliding-window rate limiting backed by Redis sorted sets.
Falls back to in-memory storage if Redis is unavailable.

SECURITY: Login attempts are counted per email to slow password brute force.
"""

import logging
import time

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# In-memory rate limit storage (fallback when Redis unavailable)
# Format: {key: [timestamp, ...]}
_memory_store: dict[str, list[float]] = {}
# {key: time after which the key holds no counted requests}
_memory_expiry: dict[str, float] = {}
_last_sweep = 0.0

_SWEEP_INTERVAL_SECONDS = 60


class RateLimitResult:
    """Outcome of a rate limit check."""

    def __init__(self, allowed: bool, retry_after_seconds: int = 0):
        self.allowed = allowed
        self.retry_after_seconds = retry_after_seconds

    def __bool__(self) -> bool:
        return self.allowed


def _sweep_memory_store(now: float) -> None:
    """Drop keys whose window has passed, at most once per sweep interval."""
    global _last_sweep
    if now - _last_sweep < _SWEEP_INTERVAL_SECONDS:
        return
    _last_sweep = now

    expired = [key for key, expires_at in _memory_expiry.items() if expires_at <= now]
    for key in expired:
        _memory_store.pop(key, None)
        _memory_expiry.pop(key, None)


async def _check_rate_limit_redis(
    client: Redis,
    key: str,
    limit: int,
    window_seconds: int,
) -> RateLimitResult:
    """
    Check rate limit using Redis.

    Uses a sliding window algorithm with Redis sorted sets.

    Args:
        client: Redis client
        key: Rate limit key (e.g., "login:user@school.edu")
        limit: Maximum requests allowed
        window_seconds: Time window in seconds

    Returns:
        RateLimitResult (truthy when the request is allowed)
    """
    now = time.time()
    window_start = now - window_seconds

    # Use a pipeline for atomic operations
    pipe = client.pipeline()
    pipe.zremrangebyscore(key, 0, window_start)
    pipe.zcard(key)
    pipe.zadd(key, {str(now): now})
    pipe.expire(key, window_seconds)
    results = await pipe.execute()
    current_count = results[1]

    if current_count >= limit:
        oldest = await client.zrange(key, 0, 0, withscores=True)
        retry_after = window_seconds
        if oldest:
            retry_after = max(1, int(oldest[0][1] + window_seconds - now))
        return RateLimitResult(False, retry_after)

    return RateLimitResult(True)


def _check_rate_limit_memory(
    key: str,
    limit: int,
    window_seconds: int,
) -> RateLimitResult:
    """
    Check rate limit using in-memory storage.

    Fallback when Redis is unavailable. Note: This doesn't work
    across multiple server instances.
    """
    now = time.time()
    _sweep_memory_store(now)
    window_start = now - window_seconds

    entries = [ts for ts in _memory_store.get(key, []) if ts > window_start]

    if len(entries) >= limit:
        _memory_store[key] = entries
        retry_after = max(1, int(entries[0] + window_seconds - now))
        return RateLimitResult(False, retry_after)

    entries.append(now)
    _memory_store[key] = entries
    _memory_expiry[key] = now + window_seconds
    return RateLimitResult(True)


async def check_rate_limit(
    key: str,
    limit: int,
    window_seconds: int,
    redis_client: Redis | None = None,
) -> RateLimitResult:
    """
    Check if a request is within rate limits and record it.

    Tries Redis first, falls back to in-memory storage.

    Args:
        key: Unique key for this rate limit (e.g., "login:user@school.edu")
        limit: Maximum requests allowed in the window
        window_seconds: Time window in seconds
        redis_client: Shared Redis client, if available

    Returns:
        RateLimitResult (truthy when the request is allowed)
    """
    if redis_client is not None:
        try:
            return await _check_rate_limit_redis(redis_client, key, limit, window_seconds)
        except Exception as e:
            logger.warning(f"Redis rate limit check failed, using memory: {e}")

    return _check_rate_limit_memory(key, limit, window_seconds)


async def reset_rate_limit(key: str, redis_client: Redis | None = None) -> None:
    """Forget all recorded requests for a key (e.g. after a successful login)."""
    _memory_store.pop(key, None)
    _memory_expiry.pop(key, None)

    if redis_client is not None:
        try:
            await redis_client.delete(key)
        except Exception as e:
            logger.warning(f"Redis rate limit reset failed for {key}: {e}")


def clear_memory_store() -> None:
    """Drop all in-memory counters."""
    global _last_sweep
    _memory_store.clear()
    _memory_expiry.clear()
    _last_sweep = 0.0


__all__ = [
    "RateLimitResult",
    "check_rate_limit",
    "reset_rate_limit",
    "clear_memory_store",
]
