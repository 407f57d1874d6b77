"""
Permit Application Model - the payable unit.

Only the fields the payment layer reads or writes live here; the rest of
the application lifecycle belongs to the permit workflow.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Numeric

from permit_payments.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationStatus(str, enum.Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    AWAITING_OXXO_PAYMENT = "AWAITING_OXXO_PAYMENT"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"


# Statuses in which an authorized payment may be captured without review
AUTO_CAPTURE_STATUSES = frozenset({
    ApplicationStatus.APPROVED,
    ApplicationStatus.PAYMENT_PROCESSING,
    ApplicationStatus.PAYMENT_RECEIVED,
})

# Statuses the reconciliation sweep looks at
RECONCILABLE_STATUSES = (
    ApplicationStatus.AWAITING_PAYMENT,
    ApplicationStatus.AWAITING_OXXO_PAYMENT,
    ApplicationStatus.PAYMENT_PROCESSING,
    ApplicationStatus.PAYMENT_FAILED,
)


class PermitApplication(Base):
    """Vehicle circulation permit application awaiting or holding a payment"""

    __tablename__ = "permit_applications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    status = Column(String(40), nullable=False, default=ApplicationStatus.AWAITING_PAYMENT.value, index=True)
    payment_intent_id = Column(String(100), nullable=True, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="MXN")

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, index=True)


def application_status_for(provider_status: str, method: str = "card") -> ApplicationStatus:
    """Application status implied by a provider intent status.

    A succeeded intent parks the application in PAYMENT_PROCESSING; the
    permit workflow moves it on after the payment_confirmed signal.
    """
    if provider_status in ("succeeded", "processing", "requires_capture"):
        return ApplicationStatus.PAYMENT_PROCESSING
    if provider_status == "canceled":
        return ApplicationStatus.PAYMENT_FAILED
    if method == "cash_voucher":
        return ApplicationStatus.AWAITING_OXXO_PAYMENT
    return ApplicationStatus.AWAITING_PAYMENT
