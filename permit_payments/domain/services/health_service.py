"""
Health checks - dependency probes for the readiness endpoint.

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: database, Redis, payment provider reachability and Celery broker
"""
from typing import Any

import httpx
import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permit_payments.core.config import settings
from permit_payments.core.logging import get_logger

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitized messages, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_PROVIDER = "error: payment_provider_unreachable"
_ERROR_CELERY = "error: celery_unavailable"

PROVIDER_HEALTHCHECK_URL = "https://api.stripe.com/healthcheck"


async def _check_db(session_factory: async_sessionmaker[AsyncSession]) -> str:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis(redis: aioredis.Redis) -> str:
    try:
        await redis.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_payment_provider() -> str:
    """Reachability only; credentials are not exercised here."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(PROVIDER_HEALTHCHECK_URL)
        if response.status_code >= 500:
            logger.warning(
                "Payment provider returned a server error",
                extra_data={"status_code": response.status_code},
            )
            return _ERROR_PROVIDER
        return _CHECK_OK
    except Exception as e:
        logger.warning("Payment provider health check failed", extra_data={"error": str(e)})
        return _ERROR_PROVIDER


async def _check_celery() -> str:
    """Ping the Celery broker (Redis)."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis,
) -> dict[str, Any]:
    """
    Probe every dependency.

    Returns ``status`` ("healthy" or "degraded") plus one entry per
    dependency: "ok" or "error: ...".
    """
    checks = {
        "db": await _check_db(session_factory),
        "redis": await _check_redis(redis),
        "payment_provider": await _check_payment_provider(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
