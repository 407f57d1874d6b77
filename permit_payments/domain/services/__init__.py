"""
Domain Services
"""
from permit_payments.domain.services.alert_service import AlertService
from permit_payments.domain.services.idempotency_cache import IdempotencyCache
from permit_payments.domain.services.payment_gateway import PaymentGatewayClient
from permit_payments.domain.services.payment_rate_limiter import PaymentRateLimiter
from permit_payments.domain.services.payment_recovery_service import PaymentRecoveryService
from permit_payments.domain.services.reconciliation_service import ReconciliationService
from permit_payments.domain.services.velocity_service import VelocityService
from permit_payments.domain.services.webhook_processor import WebhookProcessor
from permit_payments.domain.services.webhook_retry_scheduler import WebhookRetryScheduler

__all__ = [
    "AlertService",
    "IdempotencyCache",
    "PaymentGatewayClient",
    "PaymentRateLimiter",
    "PaymentRecoveryService",
    "ReconciliationService",
    "VelocityService",
    "WebhookProcessor",
    "WebhookRetryScheduler",
]
