"""Fixed-window request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _window_key(prefix: str, client_id: str, window_seconds: int, now: float) -> str:
    window = int(now // window_seconds)
    return f"{settings.RATE_LIMIT_KEY_PREFIX}:{prefix}:{client_id}:{window}"


async def _consume_redis_quota(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds)
            current, _ = await pipe.execute()
    finally:
        await client.aclose()
    return int(current)


async def _consume_local_quota(key: str, window_seconds: int, now: float) -> int:
    async with _local_lock:
        for stale in [name for name, (_, reset_at) in _local_counters.items() if reset_at <= now]:
            del _local_counters[stale]
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        _local_counters[key] = (count + 1, reset_at)
        return count + 1


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency allowing ``limit`` requests per client per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        now = time.time()
        key = _window_key(prefix, _client_identifier(request), window_seconds, now)
        try:
            current = await _consume_redis_quota(key, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Redis quota unavailable for %s, counting locally: %s", prefix, exc)
            current = await _consume_local_quota(key, window_seconds, now)

        if current > limit:
            retry_after = max(int(window_seconds - (now % window_seconds)), 1)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
