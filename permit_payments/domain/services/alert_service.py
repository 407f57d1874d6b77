"""
Alert Service - operational alerts for the payment layer.

Publishes to a Redis Pub/Sub channel (dashboards and the on-call relay
subscribe) and keeps a bounded history list. Only raised for permanent
webhook failures, breaker trips, capture problems and sweep crashes.

An alert that cannot be delivered is logged and dropped: a broken alert
channel must never mask the failure being reported.
"""
import enum
import json
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis

from permit_payments.core.logging import get_logger

logger = get_logger(__name__)

ALERT_CHANNEL = "payment_alerts"
_HISTORY_KEY = "payment_alert_history"
_MAX_HISTORY_SIZE = 200


class AlertSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertService:
    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    async def send_alert(
        self,
        title: str,
        message: str,
        severity: AlertSeverity,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Publish an alert. Returns False if it could not be delivered."""
        payload = {
            "title": title,
            "message": message,
            "severity": severity.value,
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        log = logger.error if severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL) else logger.warning
        log(f"ALERT: {title}", extra_data=payload)

        try:
            encoded = json.dumps(payload, ensure_ascii=False, default=str)
            await self._redis.publish(ALERT_CHANNEL, encoded)
            await self._redis.lpush(_HISTORY_KEY, encoded)
            await self._redis.ltrim(_HISTORY_KEY, 0, _MAX_HISTORY_SIZE - 1)
            return True
        except Exception as e:
            logger.error(
                "Failed to publish alert",
                extra_data={"title": title, "severity": severity.value, "error": str(e)},
                exc_info=True,
            )
            return False

    async def get_alert_history(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent alerts first."""
        try:
            raw_items = await self._redis.lrange(_HISTORY_KEY, 0, limit - 1)
        except Exception as e:
            logger.error("Failed to read alert history", extra_data={"error": str(e)})
            return []
        alerts = []
        for raw in raw_items:
            try:
                alerts.append(json.loads(raw))
            except ValueError:
                continue
        return alerts
