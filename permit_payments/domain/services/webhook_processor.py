"""
Webhook Processor - verified, deduplicated handling of Stripe events.

Flow per delivery:
1. signature verification (fails closed, see PaymentGatewayClient)
2. dedup claim on the webhook_events ledger
3. dispatch inside one transaction, guarded by the webhook breaker
4. on failure: persist ``failed`` and hand the event to the retry scheduler as
   attempt 1 (this delivery is attempt 0)

The endpoint answers 200 once the event is claimed, even if processing
failed, so the provider does not start a second retry chain.
"""
import json
from functools import partial
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permit_payments.core.circuit_breaker import CircuitBreakerRegistry, OperationClass
from permit_payments.core.exceptions import ConsistencyError
from permit_payments.core.logging import get_logger, payment_log_context
from permit_payments.db.database import after_commit, commit_and_notify
from permit_payments.db.models.application import ApplicationStatus
from permit_payments.db.models.payment_order import PaymentOrder, PaymentOrderStatus
from permit_payments.db.repositories import (
    ApplicationRepository,
    PaymentOrderRepository,
    WebhookEventRepository,
)
from permit_payments.domain.services.payment_events import PaymentEventPublisher
from permit_payments.domain.services.payment_gateway import PaymentGatewayClient
from permit_payments.domain.services.webhook_retry_scheduler import WebhookRetryScheduler

logger = get_logger(__name__)

Handler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]


def _application_id(intent: dict[str, Any]) -> int | None:
    raw = (intent.get("metadata") or {}).get("application_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


class WebhookProcessor:
    def __init__(
        self,
        *,
        gateway: PaymentGatewayClient,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: WebhookRetryScheduler,
        breakers: CircuitBreakerRegistry,
        events: PaymentEventPublisher,
        stale_after_seconds: int = 1800,
    ):
        self._gateway = gateway
        self._session_factory = session_factory
        self._scheduler = scheduler
        self._breaker = breakers.get(OperationClass.WEBHOOK_PROCESSING)
        self._events = events
        self._stale_after_seconds = stale_after_seconds
        self._handlers: dict[str, Handler] = {
            "payment_intent.succeeded": self._handle_succeeded,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "payment_intent.canceled": self._handle_canceled,
            "payment_intent.processing": self._handle_processing,
            "payment_intent.requires_action": self._handle_requires_action,
            "payment_intent.amount_capturable_updated": self._handle_amount_capturable_updated,
        }

    async def handle_delivery(self, raw_payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """
        Verify, claim and process one delivery.

        Raises:
            WebhookSecretMissingError, WebhookSignatureError
        """
        event = self._gateway.construct_webhook_event(raw_payload, signature_header)
        payload = json.loads(raw_payload)
        event_id = event["id"]
        event_type = event["type"]
        with payment_log_context(event_id=event_id):
            return await self._claim_and_process(event_id, event_type, payload)

    async def _claim_and_process(self, event_id: str, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._session_factory() as db:
            claimed = await WebhookEventRepository(db).try_record(
                event_id, event_type, payload, self._stale_after_seconds
            )
        if not claimed:
            return {"event_id": event_id, "status": "duplicate"}

        try:
            await self._breaker.execute(self._process_once, event_id, payload)
        except Exception as e:
            logger.error(
                "Webhook processing failed, scheduling retry",
                extra_data={"event_id": event_id, "event_type": event_type, "error": str(e)},
                exc_info=True,
            )
            await self._record_failure(event_id, str(e) or type(e).__name__)
            # This delivery was attempt 0
            scheduled = await self._scheduler.schedule_retry(event_id, 1, self.process_event, payload)
            return {"event_id": event_id, "status": "retry_scheduled" if scheduled else "failed"}

        return {"event_id": event_id, "status": "processed"}

    async def _record_failure(self, event_id: str, error: str) -> None:
        try:
            async with self._session_factory() as db:
                await WebhookEventRepository(db).mark_failed(event_id, error, retry_count=1)
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to persist webhook failure",
                extra_data={"event_id": event_id, "error": str(e)},
                exc_info=True,
            )

    async def _process_once(self, event_id: str, payload: dict[str, Any]) -> None:
        async with self._session_factory() as db:
            try:
                await self.process_event(db, payload)
                await WebhookEventRepository(db).mark_processed(event_id)
                await commit_and_notify(db)
            except Exception:
                await db.rollback()
                raise

    async def process_event(self, db: AsyncSession, payload: dict[str, Any]) -> None:
        """Apply one event inside the caller's transaction. Also the retry callback."""
        event_type = payload.get("type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring unhandled webhook event type", extra_data={"event_type": event_type})
            return
        intent = (payload.get("data") or {}).get("object") or {}
        await handler(db, intent)

    async def _load_order(self, db: AsyncSession, intent: dict[str, Any]) -> PaymentOrder | None:
        """The local order for ``intent``; created if the application exists but the order does not."""
        orders = PaymentOrderRepository(db)
        order = await orders.get_by_intent_id(intent["id"])
        if order is not None:
            return order

        application_id = _application_id(intent)
        if application_id is None:
            logger.warning(
                "Webhook intent has no application_id metadata",
                extra_data={"payment_intent_id": intent["id"]},
            )
            return None

        application = await ApplicationRepository(db).get(application_id)
        if application is None:
            raise ConsistencyError(
                f"Webhook references unknown application {application_id}",
                application_id=application_id,
                details={"payment_intent_id": intent["id"]},
            )

        return await orders.get_or_create_for_intent(application_id, intent)

    async def _apply(
        self,
        db: AsyncSession,
        intent: dict[str, Any],
        new_status: PaymentOrderStatus,
        *,
        application_status: ApplicationStatus | None = None,
        failure_reason: str | None = None,
    ) -> PaymentOrder | None:
        order = await self._load_order(db, intent)
        if order is None:
            return None
        changed = await PaymentOrderRepository(db).transition(
            order,
            new_status,
            provider_status=intent.get("status"),
            failure_reason=failure_reason,
        )
        if changed and application_status is not None:
            await ApplicationRepository(db).update_status(
                order.application_id, application_status, payment_intent_id=order.payment_intent_id
            )
        return order

    async def _handle_succeeded(self, db: AsyncSession, intent: dict[str, Any]) -> None:
        order = await self._load_order(db, intent)
        if order is None:
            return
        await PaymentOrderRepository(db).transition(
            order, PaymentOrderStatus.SUCCEEDED, provider_status="succeeded"
        )
        # Converge regardless of whether the order row moved
        await ApplicationRepository(db).update_status(
            order.application_id,
            ApplicationStatus.PAYMENT_PROCESSING,
            payment_intent_id=order.payment_intent_id,
        )
        after_commit(db, partial(
            self._events.payment_confirmed, order.application_id, order.payment_intent_id, "webhook"
        ))

    async def _handle_payment_failed(self, db: AsyncSession, intent: dict[str, Any]) -> None:
        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or error.get("code") or "payment_failed"
        await self._apply(
            db,
            intent,
            PaymentOrderStatus.FAILED,
            application_status=ApplicationStatus.PAYMENT_FAILED,
            failure_reason=reason,
        )

    async def _handle_canceled(self, db: AsyncSession, intent: dict[str, Any]) -> None:
        await self._apply(
            db,
            intent,
            PaymentOrderStatus.CANCELLED,
            application_status=ApplicationStatus.PAYMENT_FAILED,
            failure_reason=intent.get("cancellation_reason") or "canceled",
        )

    async def _handle_processing(self, db: AsyncSession, intent: dict[str, Any]) -> None:
        await self._apply(
            db,
            intent,
            PaymentOrderStatus.PROCESSING,
            application_status=ApplicationStatus.PAYMENT_PROCESSING,
        )

    async def _handle_requires_action(self, db: AsyncSession, intent: dict[str, Any]) -> None:
        order = await self._apply(db, intent, PaymentOrderStatus.PENDING)
        if order is not None:
            logger.info(
                "Payment requires customer action",
                extra_data={
                    "payment_intent_id": order.payment_intent_id,
                    "application_id": order.application_id,
                },
            )

    async def _handle_amount_capturable_updated(self, db: AsyncSession, intent: dict[str, Any]) -> None:
        await self._apply(
            db,
            intent,
            PaymentOrderStatus.PROCESSING,
            application_status=ApplicationStatus.PAYMENT_PROCESSING,
        )
