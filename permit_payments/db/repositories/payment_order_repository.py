"""
Payment Order Repository

Every status write is a read-then-conditional-write: the UPDATE only
applies if the row still holds the status that was read, so two writers
racing on the same order cannot both win.
"""
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from permit_payments.core.logging import get_logger
from permit_payments.db.models.payment_order import (
    OPEN_STATUSES,
    PaymentOrder,
    PaymentOrderStatus,
    is_transition_allowed,
    method_for_intent,
)

logger = get_logger(__name__)


class PaymentOrderRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_intent_id(self, payment_intent_id: str) -> PaymentOrder | None:
        result = await self.db.execute(
            select(PaymentOrder).where(PaymentOrder.payment_intent_id == payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def get_open_for_application(self, application_id: int) -> PaymentOrder | None:
        result = await self.db.execute(
            select(PaymentOrder).where(
                PaymentOrder.application_id == application_id,
                PaymentOrder.status.in_([s.value for s in OPEN_STATUSES]),
            )
        )
        return result.scalar_one_or_none()

    async def get_latest_for_application(self, application_id: int) -> PaymentOrder | None:
        result = await self.db.execute(
            select(PaymentOrder)
            .where(PaymentOrder.application_id == application_id)
            .order_by(PaymentOrder.created_at.desc(), PaymentOrder.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add(self, order: PaymentOrder) -> PaymentOrder:
        self.db.add(order)
        await self.db.flush()
        return order

    async def get_or_create_for_intent(
        self,
        application_id: int,
        intent: Mapping[str, Any],
    ) -> PaymentOrder:
        """Local order for a provider intent, created when it was made outside the gateway."""
        order = await self.get_by_intent_id(intent["id"])
        if order is not None:
            return order
        return await self.add(PaymentOrder(
            application_id=application_id,
            payment_intent_id=intent["id"],
            idempotency_key=f"external_{intent['id']}",
            method=method_for_intent(intent).value,
            amount=Decimal(intent.get("amount") or 0) / 100,
            currency=(intent.get("currency") or "mxn").upper(),
            status=PaymentOrderStatus.PENDING.value,
            provider_status=intent.get("status"),
        ))

    async def transition(
        self,
        order: PaymentOrder,
        new_status: PaymentOrderStatus,
        *,
        provider_status: str | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """
        Move ``order`` to ``new_status`` if the lifecycle rules allow it.

        Returns True when the row changed. ``provider_status`` is recorded
        even when the local status does not move.
        """
        current = order.status
        if not is_transition_allowed(current, new_status):
            if provider_status and provider_status != order.provider_status:
                await self.db.execute(
                    update(PaymentOrder)
                    .where(PaymentOrder.id == order.id)
                    .values(provider_status=provider_status)
                )
                order.provider_status = provider_status
            logger.debug(
                "Payment order transition skipped",
                extra_data={
                    "payment_intent_id": order.payment_intent_id,
                    "current_status": current,
                    "requested_status": new_status.value,
                },
            )
            return False

        values: dict = {"status": new_status.value}
        if provider_status is not None:
            values["provider_status"] = provider_status
        if failure_reason is not None:
            values["failure_reason"] = failure_reason[:500]

        result = await self.db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.id == order.id, PaymentOrder.status == current)
            .values(**values)
        )
        if result.rowcount == 0:
            # Someone else moved the row first; reload and let the caller re-read
            await self.db.refresh(order)
            logger.info(
                "Payment order changed concurrently",
                extra_data={
                    "payment_intent_id": order.payment_intent_id,
                    "expected_status": current,
                    "actual_status": order.status,
                },
            )
            return False

        order.status = new_status.value
        if provider_status is not None:
            order.provider_status = provider_status
        if failure_reason is not None:
            order.failure_reason = failure_reason[:500]

        logger.info(
            "Payment order status updated",
            extra_data={
                "payment_intent_id": order.payment_intent_id,
                "application_id": order.application_id,
                "old_status": current,
                "new_status": new_status.value,
            },
        )
        return True
