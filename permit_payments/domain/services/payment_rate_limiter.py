"""
Per-(customer, application) payment attempt limiter.

Sliding window on a Redis sorted set: members are attempt timestamps,
entries older than the window are trimmed before counting. This is
throughput protection only; fraud scoring lives in VelocityService.
"""
import math
import time
import uuid

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from permit_payments.core.exceptions import RateLimitExceededError
from permit_payments.core.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_MESSAGE = (
    "Demasiados intentos de pago para esta solicitud. "
    "Por favor, espere 15 minutos antes de intentar nuevamente."
)


class PaymentRateLimiter:
    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        max_attempts: int = 3,
        window_seconds: int = 900,
    ):
        self._redis = redis
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    @staticmethod
    def _key(application_id: int, customer_id: str) -> str:
        return f"app_payment:{application_id}:{customer_id}"

    async def check(self, application_id: int, customer_id: str) -> None:
        """
        Count this attempt against the window.

        Raises:
            RateLimitExceededError: the window already holds ``max_attempts``
        """
        key = self._key(application_id, customer_id)
        now = time.time()

        try:
            await self._redis.zremrangebyscore(key, 0, now - self.window_seconds)
            current = int(await self._redis.zcard(key))

            if current >= self.max_attempts:
                oldest = await self._redis.zrange(key, 0, 0, withscores=True)
                retry_after = self.window_seconds
                if oldest:
                    retry_after = max(1, math.ceil(oldest[0][1] + self.window_seconds - now))
                logger.warning(
                    "Payment rate limit exceeded",
                    extra_data={
                        "application_id": application_id,
                        "customer_id": customer_id,
                        "attempts": current,
                        "retry_after_seconds": retry_after,
                    },
                )
                raise RateLimitExceededError(RATE_LIMIT_MESSAGE, retry_after_seconds=retry_after)

            await self._redis.zadd(key, {f"{now:.6f}:{uuid.uuid4().hex[:8]}": now})
            await self._redis.expire(key, self.window_seconds)
        except RedisError as e:
            logger.error(
                "Payment rate limiter unavailable, allowing attempt",
                extra_data={"application_id": application_id, "error": str(e)},
            )

    async def reset(self, application_id: int, customer_id: str) -> None:
        """Clear the window, e.g. after a payment succeeds."""
        try:
            await self._redis.delete(self._key(application_id, customer_id))
        except RedisError as e:
            logger.warning(
                "Failed to reset payment rate limit",
                extra_data={"application_id": application_id, "error": str(e)},
            )
