"""
Service container - builds and owns every payment collaborator.

One instance per process (FastAPI app or Celery task). Breakers, pending
retries, re-checks and metrics live on the instance, so tests get a fresh
set by building a new container.
"""
import asyncio
import time
from typing import Any, Callable

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permit_payments.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from permit_payments.core.config import Settings
from permit_payments.core.logging import get_logger
from permit_payments.domain.services.alert_service import AlertService, AlertSeverity
from permit_payments.domain.services.idempotency_cache import IdempotencyCache
from permit_payments.domain.services.metrics import PaymentMetrics
from permit_payments.domain.services.payment_events import PaymentEventPublisher
from permit_payments.domain.services.payment_gateway import PaymentGatewayClient, counts_as_breaker_failure
from permit_payments.domain.services.payment_rate_limiter import PaymentRateLimiter
from permit_payments.domain.services.payment_recovery_service import PaymentRecoveryService
from permit_payments.domain.services.reconciliation_service import ReconciliationService
from permit_payments.domain.services.velocity_service import VelocityService
from permit_payments.domain.services.webhook_processor import WebhookProcessor
from permit_payments.domain.services.webhook_retry_scheduler import WebhookRetryScheduler

logger = get_logger(__name__)


class PaymentServices:
    def __init__(
        self,
        *,
        settings: Settings,
        redis: aioredis.Redis,
        session_factory: async_sessionmaker[AsyncSession],
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.redis = redis
        self.session_factory = session_factory

        self.cache = IdempotencyCache(redis)
        self.alerts = AlertService(redis)
        self.events = PaymentEventPublisher(redis)
        self.metrics = PaymentMetrics()
        self.breakers = CircuitBreakerRegistry.from_settings(
            settings,
            is_failure=counts_as_breaker_failure,
            on_state_change=self._on_breaker_state_change,
            clock=clock,
        )
        self.velocity = VelocityService(redis, enabled=settings.VELOCITY_CHECK_ENABLED)
        self.rate_limiter = PaymentRateLimiter(
            redis,
            max_attempts=settings.PAYMENT_RATE_LIMIT_MAX_ATTEMPTS,
            window_seconds=settings.PAYMENT_RATE_LIMIT_WINDOW_SECONDS,
        )
        self.gateway = PaymentGatewayClient(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            breakers=self.breakers,
            session_factory=session_factory,
            metrics=self.metrics,
            velocity=self.velocity,
            rate_limiter=self.rate_limiter,
            velocity_check_enabled=settings.VELOCITY_CHECK_ENABLED,
            currency=settings.PAYMENT_CURRENCY,
            description=settings.PAYMENT_DESCRIPTION,
            oxxo_expiration_days=settings.OXXO_EXPIRATION_DAYS,
        )
        self.retry_scheduler = WebhookRetryScheduler(
            session_factory=session_factory,
            alerts=self.alerts,
            max_retries=settings.WEBHOOK_MAX_RETRIES,
            retry_delays=settings.webhook_retry_delays,
            sleep=sleep,
        )
        self.webhooks = WebhookProcessor(
            gateway=self.gateway,
            session_factory=session_factory,
            scheduler=self.retry_scheduler,
            breakers=self.breakers,
            events=self.events,
            stale_after_seconds=settings.WEBHOOK_STALE_PROCESSING_SECONDS,
        )
        self.recovery = PaymentRecoveryService(
            gateway=self.gateway,
            session_factory=session_factory,
            cache=self.cache,
            breakers=self.breakers,
            alerts=self.alerts,
            events=self.events,
            max_attempts=settings.RECOVERY_MAX_ATTEMPTS,
            recheck_delays=settings.recovery_recheck_delays,
            idempotency_ttl_seconds=settings.RECOVERY_IDEMPOTENCY_TTL_SECONDS,
            sleep=sleep,
        )
        self.reconciliation = ReconciliationService(
            recovery=self.recovery,
            session_factory=session_factory,
            alerts=self.alerts,
            stuck_after_minutes=settings.RECONCILIATION_STUCK_AFTER_MINUTES,
            batch_size=settings.RECONCILIATION_BATCH_SIZE,
        )
        self._started = False

    async def _on_breaker_state_change(
        self,
        breaker: CircuitBreaker,
        old_state: CircuitState,
        new_state: CircuitState,
    ) -> None:
        if new_state != CircuitState.OPEN:
            return
        await self.alerts.send_alert(
            title="Circuit Breaker Opened",
            message=f"Circuit breaker '{breaker.service_name}' opened ({old_state.value} -> open)",
            severity=AlertSeverity.HIGH,
            details=breaker.to_dict(),
        )

    async def start(self) -> None:
        if self._started:
            return
        await self.retry_scheduler.start()
        await self.recovery.start()
        self._started = True
        logger.info("Payment services started")

    async def stop(self) -> None:
        """Cancel pending retries and re-checks. Redis is closed by the owner of the client."""
        if not self._started:
            return
        await self.retry_scheduler.stop()
        await self.recovery.stop()
        self._started = False
        logger.info("Payment services stopped")

    async def stats(self, hours: int = 24) -> dict[str, Any]:
        return {
            "recovery": self.recovery.get_metrics(),
            "recovery_attempts": await self.recovery.get_recovery_stats(hours),
            "circuit_breakers": self.breakers.snapshot(),
            "webhook_retries": self.retry_scheduler.get_retry_stats(),
            "payments": self.metrics.snapshot(),
            "recent_alerts": await self.alerts.get_alert_history(limit=20),
        }
