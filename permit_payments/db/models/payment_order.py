"""
Payment Order Model - local record of one provider payment intent.

``provider_status`` mirrors what the provider last reported; ``status`` is
the local lifecycle and only moves toward a terminal value. A partial
unique index keeps at most one open order per application.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Numeric, ForeignKey, Index, text

from permit_payments.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    CASH_VOUCHER = "cash_voucher"


class PaymentOrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


OPEN_STATUSES = frozenset({PaymentOrderStatus.PENDING, PaymentOrderStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({
    PaymentOrderStatus.SUCCEEDED,
    PaymentOrderStatus.FAILED,
    PaymentOrderStatus.CANCELLED,
})

PROVIDER_STATUS_TO_ORDER_STATUS: dict[str, PaymentOrderStatus] = {
    "requires_payment_method": PaymentOrderStatus.PENDING,
    "requires_confirmation": PaymentOrderStatus.PENDING,
    "requires_action": PaymentOrderStatus.PENDING,
    "processing": PaymentOrderStatus.PROCESSING,
    "requires_capture": PaymentOrderStatus.PROCESSING,
    "succeeded": PaymentOrderStatus.SUCCEEDED,
    "canceled": PaymentOrderStatus.CANCELLED,
}

def method_for_intent(intent) -> PaymentMethod:
    """Payment method of a provider intent, from our metadata or its method types."""
    metadata = intent.get("metadata") or {}
    if metadata.get("payment_method") == PaymentMethod.CASH_VOUCHER.value:
        return PaymentMethod.CASH_VOUCHER
    if "oxxo" in (intent.get("payment_method_types") or []):
        return PaymentMethod.CASH_VOUCHER
    return PaymentMethod.CARD


_OPEN_RANK = {PaymentOrderStatus.PENDING: 0, PaymentOrderStatus.PROCESSING: 1}


def order_status_for(provider_status: str) -> PaymentOrderStatus:
    """Map a provider intent status to the local lifecycle (unknown → pending)."""
    return PROVIDER_STATUS_TO_ORDER_STATUS.get(provider_status, PaymentOrderStatus.PENDING)


def is_transition_allowed(current: str, new: str) -> bool:
    """
    Guard for every status write.

    - SUCCEEDED wins over anything except itself (the provider captured money)
    - other terminal statuses are never overwritten
    - open statuses only move forward (pending → processing → terminal)
    """
    current = PaymentOrderStatus(current)
    new = PaymentOrderStatus(new)
    if current == new:
        return False
    if new == PaymentOrderStatus.SUCCEEDED:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new in TERMINAL_STATUSES:
        return True
    return _OPEN_RANK[new] > _OPEN_RANK[current]


_OPEN_ORDER_PREDICATE = "status IN ('pending', 'processing')"


class PaymentOrder(Base):
    """One payment attempt against the provider for an application"""

    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("permit_applications.id"), nullable=False, index=True)

    payment_intent_id = Column(String(100), nullable=False, unique=True)
    idempotency_key = Column(String(100), nullable=False, index=True)
    method = Column(String(20), nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="MXN")

    status = Column(String(20), nullable=False, default=PaymentOrderStatus.PENDING.value)
    provider_status = Column(String(40), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    # Cash voucher details
    voucher_reference = Column(String(64), nullable=True)
    voucher_url = Column(String(500), nullable=True)
    voucher_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            "uq_payment_orders_open_application",
            "application_id",
            unique=True,
            postgresql_where=text(_OPEN_ORDER_PREDICATE),
            sqlite_where=text(_OPEN_ORDER_PREDICATE),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}
