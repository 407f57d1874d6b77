"""
Redis client factory.

The service container calls get_redis() once at startup and hands the
client to every collaborator that needs shared state (idempotency cache,
rate limiter, velocity counters, alerts). close_redis() runs on shutdown.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from permit_payments.core.config import settings
from permit_payments.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis(url: str | None = None) -> aioredis.Redis:
    """Return the pooled Redis client, creating it on first call."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        redis_url = url or settings.REDIS_URL
        client = aioredis.from_url(redis_url, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(redis_url),
        })
    return _redis_client


async def close_redis() -> None:
    """Close the pooled client. Safe to call when it was never opened."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
