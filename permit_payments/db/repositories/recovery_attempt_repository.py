"""
Recovery Attempt Repository
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from permit_payments.db.models.recovery_attempt import (
    RecoveryAttempt,
    RecoveryStatus,
)


class RecoveryAttemptRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, application_id: int, payment_intent_id: str) -> RecoveryAttempt | None:
        result = await self.db.execute(
            select(RecoveryAttempt).where(
                RecoveryAttempt.application_id == application_id,
                RecoveryAttempt.payment_intent_id == payment_intent_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, application_id: int, payment_intent_id: str) -> RecoveryAttempt:
        attempt = await self.get(application_id, payment_intent_id)
        if attempt is not None:
            return attempt
        try:
            async with self.db.begin_nested():
                attempt = RecoveryAttempt(
                    application_id=application_id,
                    payment_intent_id=payment_intent_id,
                    attempt_count=0,
                    recovery_status=RecoveryStatus.NOT_ATTEMPTED.value,
                )
                self.db.add(attempt)
            return attempt
        except IntegrityError:
            # Created concurrently by another worker
            return await self.get(application_id, payment_intent_id)

    async def register_attempt(self, attempt: RecoveryAttempt) -> int:
        """Atomically increment the attempt counter and mark the row as recovering."""
        now = datetime.now(timezone.utc)
        await self.db.execute(
            update(RecoveryAttempt)
            .where(RecoveryAttempt.id == attempt.id)
            .values(
                attempt_count=RecoveryAttempt.attempt_count + 1,
                last_attempt_time=now,
                recovery_status=RecoveryStatus.RECOVERING.value,
            )
        )
        await self.db.refresh(attempt)
        return attempt.attempt_count

    async def update_status(
        self,
        application_id: int,
        payment_intent_id: str,
        status: RecoveryStatus,
        last_error: str | None = None,
    ) -> None:
        values: dict = {"recovery_status": status.value}
        if last_error is not None:
            values["last_error"] = last_error[:1000]
        await self.db.execute(
            update(RecoveryAttempt)
            .where(
                RecoveryAttempt.application_id == application_id,
                RecoveryAttempt.payment_intent_id == payment_intent_id,
            )
            .values(**values)
        )

    async def find_stuck(
        self,
        older_than_minutes: int,
        max_attempts: int,
        limit: int = 100,
    ) -> list[RecoveryAttempt]:
        """Attempts left in ``recovering`` that still have budget."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        result = await self.db.execute(
            select(RecoveryAttempt)
            .where(
                RecoveryAttempt.recovery_status == RecoveryStatus.RECOVERING.value,
                RecoveryAttempt.last_attempt_time < cutoff,
                RecoveryAttempt.attempt_count < max_attempts,
            )
            .order_by(RecoveryAttempt.last_attempt_time.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def stats(self, hours: int = 24) -> dict[str, int]:
        """Attempt rows touched within the window, grouped by status."""
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        result = await self.db.execute(
            select(RecoveryAttempt.recovery_status, func.count())
            .where(RecoveryAttempt.updated_at >= since)
            .group_by(RecoveryAttempt.recovery_status)
        )
        counts = {status.value: 0 for status in RecoveryStatus}
        for status, count in result.all():
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts
