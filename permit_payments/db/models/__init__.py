"""
Database Models
"""
from permit_payments.db.models.application import PermitApplication
from permit_payments.db.models.payment_order import PaymentOrder
from permit_payments.db.models.webhook_event import WebhookEvent
from permit_payments.db.models.recovery_attempt import RecoveryAttempt

__all__ = [
    "PermitApplication",
    "PaymentOrder",
    "WebhookEvent",
    "RecoveryAttempt",
]
