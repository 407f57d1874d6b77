"""
Webhook Event Model - idempotency and retry ledger for provider notifications.

One row per provider event id. ``processed`` and ``failed_permanent`` rows
are final and never reprocessed; ``pending`` and ``failed`` rows belong to
an in-flight retry chain.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from permit_payments.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"


FINAL_WEBHOOK_STATUSES = frozenset({
    WebhookProcessingStatus.PROCESSED.value,
    WebhookProcessingStatus.FAILED_PERMANENT.value,
})


class WebhookEvent(Base):
    """Provider notification received on the webhook endpoint"""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    processing_status = Column(
        String(20), nullable=False, default=WebhookProcessingStatus.PENDING.value
    )
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    payload_compacted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status_updated", "processing_status", "updated_at"),
    )
