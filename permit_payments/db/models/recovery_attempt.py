"""
Recovery Attempt Model - audit trail of pull-based recovery per (application, intent).

Rows are created on the first recovery call and incremented afterwards;
they are only purged once terminal and old.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Index

from permit_payments.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecoveryStatus(str, enum.Enum):
    NOT_ATTEMPTED = "not_attempted"
    RECOVERING = "recovering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"


class RecoveryAttempt(Base):
    """Recovery bookkeeping for one payment intent"""

    __tablename__ = "payment_recovery_attempts"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, nullable=False, index=True)
    payment_intent_id = Column(String(100), nullable=False)

    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_time = Column(DateTime(timezone=True), nullable=True)
    recovery_status = Column(String(30), nullable=False, default=RecoveryStatus.NOT_ATTEMPTED.value)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("application_id", "payment_intent_id", name="uq_recovery_application_intent"),
        Index("ix_recovery_status_updated", "recovery_status", "updated_at"),
    )
