"""
Webhook Event Repository - dedup ledger for provider notifications.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from permit_payments.core.logging import get_logger
from permit_payments.db.models.webhook_event import (
    FINAL_WEBHOOK_STATUSES,
    WebhookEvent,
    WebhookProcessingStatus,
)

logger = get_logger(__name__)


class WebhookEventRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, event_id: str) -> WebhookEvent | None:
        return await self.db.get(WebhookEvent, event_id)

    async def try_record(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        stale_after_seconds: int,
    ) -> bool:
        """
        Claim an event for processing. True if this caller should process it.

        Optimistic: INSERT first inside a savepoint, handle the duplicate
        afterwards. Final rows are never claimed again. Rows left in
        pending/failed longer than ``stale_after_seconds`` (e.g. the process
        that owned the retry chain died) can be taken over. Commits, so the
        claim survives a processing failure.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self.db.begin_nested():
                self.db.add(WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    payload=payload,
                    processing_status=WebhookProcessingStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                ))
            await self.db.commit()
            return True
        except IntegrityError:
            pass

        result = await self.db.execute(
            select(WebhookEvent.processing_status).where(WebhookEvent.event_id == event_id)
        )
        status = result.scalar_one_or_none()
        if status is None or status in FINAL_WEBHOOK_STATUSES:
            logger.info(
                "Skipping duplicate webhook event",
                extra_data={"event_id": event_id, "processing_status": status},
            )
            return False

        threshold = now - timedelta(seconds=stale_after_seconds)
        takeover = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.processing_status.in_([
                    WebhookProcessingStatus.PENDING.value,
                    WebhookProcessingStatus.FAILED.value,
                ]),
                WebhookEvent.updated_at < threshold,
            )
            .values(processing_status=WebhookProcessingStatus.PENDING.value, updated_at=now)
        )
        if takeover.rowcount > 0:
            await self.db.commit()
            logger.warning(
                "Taking over stale webhook event",
                extra_data={"event_id": event_id},
            )
            return True

        logger.info(
            "Skipping webhook event already in a retry chain",
            extra_data={"event_id": event_id, "processing_status": status},
        )
        return False

    async def mark_processed(self, event_id: str) -> None:
        now = datetime.now(timezone.utc)
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(
                processing_status=WebhookProcessingStatus.PROCESSED.value,
                last_error=None,
                processed_at=now,
                updated_at=now,
            )
        )

    async def mark_failed(self, event_id: str, error: str, retry_count: int | None = None) -> None:
        values: dict = {
            "processing_status": WebhookProcessingStatus.FAILED.value,
            "last_error": error[:1000],
            "updated_at": datetime.now(timezone.utc),
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.processing_status.not_in(list(FINAL_WEBHOOK_STATUSES)),
            )
            .values(**values)
        )

    async def mark_failed_permanent(self, event_id: str, reason: str) -> bool:
        """Returns False when the event was already final (processed or permanently failed)."""
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.processing_status.not_in(list(FINAL_WEBHOOK_STATUSES)),
            )
            .values(
                processing_status=WebhookProcessingStatus.FAILED_PERMANENT.value,
                last_error=reason[:1000],
                updated_at=datetime.now(timezone.utc),
            )
        )
        return result.rowcount > 0

    async def compact_processed_before(self, cutoff: datetime) -> int:
        """Drop the raw payload of events processed before ``cutoff``; the row stays as the dedup key."""
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.processing_status == WebhookProcessingStatus.PROCESSED.value,
                WebhookEvent.processed_at < cutoff,
                WebhookEvent.payload_compacted_at.is_(None),
            )
            .values(payload={}, payload_compacted_at=datetime.now(timezone.utc))
        )
        return result.rowcount or 0
