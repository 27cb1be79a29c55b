"""Per-client HTTP throttle backed by Redis.

This guards routes against request floods from one address. It is separate
from the per-user metering rate limiter, which counts gated AI operations in
the database.
"""

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
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, window_seconds: int) -> Tuple[int, float]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count, reset_at - now


async def _consume_redis_quota(key: str, window_seconds: int) -> Tuple[int, float]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        count = await client.incr(key)
        if count == 1:
            await client.expire(key, window_seconds)
        ttl = await client.ttl(key)
    finally:
        await client.aclose()
    return int(count), float(ttl if ttl and ttl > 0 else window_seconds)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency allowing ``limit`` requests per client per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"cg:throttle:{prefix}:{_client_identifier(request)}"
        try:
            count, retry_after = await _consume_redis_quota(key, window_seconds)
        except (RedisError, OSError):
            logger.debug("Redis throttle unavailable; using in-process counters", exc_info=True)
            count, retry_after = await _consume_local_quota(key, window_seconds)

        if count > limit:
            seconds = max(int(retry_after), 1)
            raise HTTPException(
                status_code=429,
                detail={
                    "code": "too_many_requests",
                    "message": f"Too many {prefix} requests. Try again later.",
                    "retry_after_seconds": seconds,
                },
                headers={"Retry-After": str(seconds)},
            )

    return _dependency
