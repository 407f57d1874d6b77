"""
Repositories - session-scoped data access for the payment tables.

Callers own the transaction; repositories never commit except where noted.
"""
from permit_payments.db.repositories.application_repository import ApplicationRepository
from permit_payments.db.repositories.payment_order_repository import PaymentOrderRepository
from permit_payments.db.repositories.recovery_attempt_repository import RecoveryAttemptRepository
from permit_payments.db.repositories.webhook_event_repository import WebhookEventRepository

__all__ = [
    "ApplicationRepository",
    "PaymentOrderRepository",
    "RecoveryAttemptRepository",
    "WebhookEventRepository",
]
