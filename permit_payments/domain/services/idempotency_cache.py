"""
Idempotency Cache - TTL key/value store in Redis.

Used by the gateway and the recovery engine to dedupe concurrent or
retried operations across processes. Redis being unavailable degrades to
"no cached value" rather than failing the payment path; the persisted
attempt counters still bound the work.
"""
import json
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from permit_payments.core.logging import get_logger

logger = get_logger(__name__)


class IdempotencyCache:
    def __init__(self, redis: aioredis.Redis, *, namespace: str = "idem"):
        self._redis = redis
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as e:
            logger.warning(
                "Idempotency cache read failed",
                extra_data={"key": key, "error": str(e)},
            )
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable idempotency entry", extra_data={"key": key})
            return None

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self._redis.set(
                self._key(key),
                json.dumps(value, ensure_ascii=False, default=str),
                ex=ttl_seconds,
            )
        except RedisError as e:
            logger.warning(
                "Idempotency cache write failed",
                extra_data={"key": key, "error": str(e)},
            )

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """SET NX: True if this caller now owns ``key`` for ``ttl_seconds``."""
        try:
            acquired = await self._redis.set(self._key(key), "1", nx=True, ex=ttl_seconds)
        except RedisError as e:
            logger.warning(
                "Idempotency claim failed, proceeding without it",
                extra_data={"key": key, "error": str(e)},
            )
            return True
        return bool(acquired)

    async def release(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except RedisError as e:
            logger.warning(
                "Idempotency release failed",
                extra_data={"key": key, "error": str(e)},
            )
