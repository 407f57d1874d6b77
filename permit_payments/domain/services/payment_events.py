"""
Payment events published for downstream consumers.

Permit generation and customer notifications subscribe to
``payment_events`` and start once a payment is confirmed.
"""
import json
from datetime import datetime, timezone

import redis.asyncio as aioredis

from permit_payments.core.logging import get_logger

logger = get_logger(__name__)

PAYMENT_EVENTS_CHANNEL = "payment_events"


class PaymentEventPublisher:
    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    async def payment_confirmed(
        self,
        application_id: int,
        payment_intent_id: str,
        source: str,
    ) -> None:
        """Announce that ``application_id`` is paid. ``source`` is webhook, recovery or reconciliation."""
        message = json.dumps({
            "type": "payment_confirmed",
            "application_id": application_id,
            "payment_intent_id": payment_intent_id,
            "source": source,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        try:
            await self._redis.publish(PAYMENT_EVENTS_CHANNEL, message)
        except Exception as e:
            # The reconciliation sweep re-derives state, so a lost signal is recoverable
            logger.error(
                "Failed to publish payment_confirmed",
                extra_data={
                    "application_id": application_id,
                    "payment_intent_id": payment_intent_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            return
        logger.info(
            "Payment confirmed",
            extra_data={
                "application_id": application_id,
                "payment_intent_id": payment_intent_id,
                "source": source,
            },
        )
