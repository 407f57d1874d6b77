"""
Application Repository - the slice of permit application data the payment layer touches.
"""
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from permit_payments.db.models.application import ApplicationStatus, PermitApplication


class ApplicationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, application_id: int) -> PermitApplication | None:
        return await self.db.get(PermitApplication, application_id)

    async def update_status(
        self,
        application_id: int,
        status: ApplicationStatus,
        payment_intent_id: str | None = None,
    ) -> bool:
        """Set the application status (and intent id when given). Returns False if it does not exist."""
        values: dict = {"status": status.value}
        if payment_intent_id is not None:
            values["payment_intent_id"] = payment_intent_id
        result = await self.db.execute(
            update(PermitApplication)
            .where(PermitApplication.id == application_id)
            .values(**values)
        )
        return result.rowcount > 0

    async def find_stuck(
        self,
        statuses: tuple[ApplicationStatus, ...],
        updated_before: datetime,
        limit: int,
    ) -> list[PermitApplication]:
        """Applications with an intent that have not moved since ``updated_before``, oldest first."""
        result = await self.db.execute(
            select(PermitApplication)
            .where(
                PermitApplication.status.in_([s.value for s in statuses]),
                PermitApplication.payment_intent_id.is_not(None),
                PermitApplication.updated_at < updated_before,
            )
            .order_by(PermitApplication.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
