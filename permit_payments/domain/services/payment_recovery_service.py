"""
Payment Recovery Service - pull-based correction of stuck payments.

Used when a webhook never arrived or local state is stale. Triggered by the
reconciliation sweep, by scheduled re-checks of still-processing intents
and by operators from the admin endpoints; all of them may race, so every
run goes through:

1. the idempotency cache (recent result for the same intent is returned)
2. the recovery circuit breaker
3. a distributed in-flight claim (SET NX)
4. the persisted attempt budget (RecoveryAttempt.attempt_count)

attempt_payment_recovery and reconcile_payment_status never raise; every
failure is reported in the returned dict.
"""
import asyncio
from collections import Counter
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permit_payments.core.circuit_breaker import CircuitBreakerRegistry, OperationClass
from permit_payments.core.exceptions import CircuitBreakerOpenError, ProviderError
from permit_payments.core.logging import get_logger, payment_log_context
from permit_payments.db.models.application import (
    AUTO_CAPTURE_STATUSES,
    ApplicationStatus,
    application_status_for,
)
from permit_payments.db.models.payment_order import (
    TERMINAL_STATUSES,
    PaymentOrderStatus,
    method_for_intent,
    order_status_for,
)
from permit_payments.db.models.recovery_attempt import RecoveryStatus
from permit_payments.db.repositories import (
    ApplicationRepository,
    PaymentOrderRepository,
    RecoveryAttemptRepository,
)
from permit_payments.domain.services.alert_service import AlertService, AlertSeverity
from permit_payments.domain.services.idempotency_cache import IdempotencyCache
from permit_payments.domain.services.payment_events import PaymentEventPublisher
from permit_payments.domain.services.payment_gateway import PaymentGatewayClient, operation_for

logger = get_logger(__name__)

REQUIRES_PAYMENT_METHOD_MESSAGE = "El pago requiere un nuevo método de pago. Por favor, intente nuevamente."

SleepFn = Callable[[float], Awaitable[Any]]


def recovery_key(application_id: int, payment_intent_id: str) -> str:
    return f"recovery_{application_id}_{payment_intent_id}"


class PaymentRecoveryService:
    def __init__(
        self,
        *,
        gateway: PaymentGatewayClient,
        session_factory: async_sessionmaker[AsyncSession],
        cache: IdempotencyCache,
        breakers: CircuitBreakerRegistry,
        alerts: AlertService,
        events: PaymentEventPublisher,
        max_attempts: int = 3,
        recheck_delays: Sequence[int] = (30, 60, 120),
        idempotency_ttl_seconds: int = 300,
        sleep: SleepFn = asyncio.sleep,
    ):
        if not recheck_delays:
            raise ValueError("recheck_delays must not be empty")
        self._gateway = gateway
        self._session_factory = session_factory
        self._cache = cache
        self._breaker = breakers.get(OperationClass.RECOVERY)
        self._alerts = alerts
        self._events = events
        self.max_attempts = max_attempts
        self.recheck_delays = list(recheck_delays)
        self.idempotency_ttl_seconds = idempotency_ttl_seconds
        self._sleep = sleep
        self._rechecks: dict[tuple[int, str], asyncio.Task] = {}
        self._metrics: Counter = Counter()

    async def start(self) -> None:
        logger.info(
            "Payment recovery service started",
            extra_data={"max_attempts": self.max_attempts, "recheck_delays": self.recheck_delays},
        )

    async def stop(self) -> None:
        tasks = list(self._rechecks.values())
        self._rechecks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Payment recovery service stopped", extra_data={"cancelled_rechecks": len(tasks)})

    def get_recheck_delay(self, attempt_count: int) -> int:
        """Delay before re-checking after attempt ``attempt_count`` (1-based)."""
        index = min(max(0, attempt_count - 1), len(self.recheck_delays) - 1)
        return self.recheck_delays[index]

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def attempt_payment_recovery(
        self,
        application_id: int,
        payment_intent_id: str,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with payment_log_context(application_id=application_id, payment_intent_id=payment_intent_id):
            return await self._attempt(application_id, payment_intent_id, context or {})

    async def _attempt(
        self, application_id: int, payment_intent_id: str, context: dict[str, Any]
    ) -> dict[str, Any]:
        key = recovery_key(application_id, payment_intent_id)
        log_data = {
            "application_id": application_id,
            "payment_intent_id": payment_intent_id,
            "trigger": context.get("trigger"),
        }

        cached = await self._cache.get(key)
        if cached is not None:
            logger.info("Returning cached recovery result", extra_data=log_data)
            return cached

        if not self._breaker.allows_request():
            self._metrics["circuit_breaker_trips"] += 1
            logger.warning("Recovery skipped, circuit breaker open", extra_data=log_data)
            return {"success": False, "reason": "circuit_breaker_open"}

        lock_key = f"{key}:in_flight"
        if not await self._cache.claim(lock_key, self.idempotency_ttl_seconds):
            logger.info("Recovery already running elsewhere", extra_data=log_data)
            return {"success": False, "reason": "recovery_in_progress"}

        try:
            return await self._run_recovery(application_id, payment_intent_id, key, log_data)
        finally:
            await self._cache.release(lock_key)

    async def _run_recovery(
        self,
        application_id: int,
        payment_intent_id: str,
        key: str,
        log_data: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            async with self._session_factory() as db:
                attempts = RecoveryAttemptRepository(db)
                attempt = await attempts.get_or_create(application_id, payment_intent_id)
                if attempt.attempt_count >= self.max_attempts:
                    await attempts.update_status(
                        application_id, payment_intent_id, RecoveryStatus.MAX_ATTEMPTS_REACHED
                    )
                    await db.commit()
                    logger.warning(
                        "Recovery attempt budget exhausted",
                        extra_data={**log_data, "attempts": attempt.attempt_count},
                    )
                    return {
                        "success": False,
                        "reason": "max_attempts_reached",
                        "attempts": attempt.attempt_count,
                    }
                attempt_count = await attempts.register_attempt(attempt)
                await db.commit()
        except Exception as e:
            logger.error("Recovery bookkeeping failed", extra_data={**log_data, "error": str(e)}, exc_info=True)
            self._metrics["failed_recoveries"] += 1
            return {"success": False, "reason": "recovery_error", "error": str(e)}

        self._metrics["recovery_attempts"] += 1
        logger.info("Attempting payment recovery", extra_data={**log_data, "attempt": attempt_count})

        try:
            result = await self._breaker.execute(
                self._perform_recovery, application_id, payment_intent_id, attempt_count
            )
        except CircuitBreakerOpenError:
            self._metrics["circuit_breaker_trips"] += 1
            result = {"success": False, "reason": "circuit_breaker_open"}
        except Exception as e:
            logger.error("Payment recovery failed", extra_data={**log_data, "error": str(e)}, exc_info=True)
            result = {"success": False, "reason": "recovery_error", "error": str(e)}

        await self._finish(application_id, payment_intent_id, key, result)
        return result

    async def _finish(
        self,
        application_id: int,
        payment_intent_id: str,
        key: str,
        result: dict[str, Any],
    ) -> None:
        """Persist the attempt outcome, update metrics and cache the result."""
        reason = result.get("reason")
        if result.get("success"):
            status = RecoveryStatus.SUCCEEDED
            self._metrics["successful_recoveries"] += 1
        elif reason == "still_processing":
            status = RecoveryStatus.RECOVERING
        else:
            status = RecoveryStatus.FAILED
            self._metrics["failed_recoveries"] += 1

        try:
            async with self._session_factory() as db:
                await RecoveryAttemptRepository(db).update_status(
                    application_id,
                    payment_intent_id,
                    status,
                    last_error=None if status != RecoveryStatus.FAILED else (result.get("error") or reason),
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to persist recovery outcome",
                extra_data={"application_id": application_id, "payment_intent_id": payment_intent_id, "error": str(e)},
                exc_info=True,
            )

        # A still-processing result must not short-circuit the scheduled re-check
        if reason not in ("still_processing", "circuit_breaker_open"):
            await self._cache.set(key, result, self.idempotency_ttl_seconds)

    async def _perform_recovery(
        self,
        application_id: int,
        payment_intent_id: str,
        attempt_count: int,
    ) -> dict[str, Any]:
        async with self._session_factory() as db:
            order = await PaymentOrderRepository(db).get_by_intent_id(payment_intent_id)
        operation = operation_for(order.method if order else None)
        try:
            intent = await self._gateway.retrieve_payment_intent(payment_intent_id, operation)
        except ProviderError as e:
            if e.provider_code == "resource_missing":
                return {"success": False, "reason": "payment_intent_not_found"}
            raise
        if order is None:
            operation = operation_for(method_for_intent(intent))
        return await self._apply_intent_status(application_id, intent, attempt_count, operation=operation)

    async def _apply_intent_status(
        self,
        application_id: int,
        intent: Any,
        attempt_count: int,
        *,
        operation: OperationClass = OperationClass.CARD_PAYMENT,
        allow_actions: bool = True,
    ) -> dict[str, Any]:
        payment_intent_id = intent["id"]
        status = intent["status"]

        if status == "succeeded":
            await self._mark_succeeded(application_id, intent, source="recovery")
            return {"success": True, "reason": "payment_succeeded", "status": status}

        if status == "processing":
            delay = self.get_recheck_delay(attempt_count)
            self._schedule_recheck(application_id, payment_intent_id, delay)
            await self._sync_open_status(application_id, intent)
            return {"success": False, "reason": "still_processing", "next_check_in": delay}

        if status == "requires_capture" and allow_actions:
            return await self._handle_requires_capture(application_id, intent, attempt_count, operation)

        if status == "requires_confirmation" and allow_actions:
            try:
                confirmed = await self._gateway.confirm_payment_intent(payment_intent_id, operation)
            except Exception as e:
                logger.warning(
                    "Recovery confirmation failed",
                    extra_data={"payment_intent_id": payment_intent_id, "error": str(e)},
                )
                return {"success": False, "reason": "confirmation_error", "error": str(e)}
            result = await self._apply_intent_status(
                application_id, confirmed, attempt_count, operation=operation, allow_actions=False
            )
            if not result["success"] and result["reason"] == "unknown_status":
                return {"success": False, "reason": "confirmation_failed", "status": confirmed["status"]}
            return result

        if status == "requires_payment_method":
            await self._mark_failed(
                application_id, intent, PaymentOrderStatus.FAILED, REQUIRES_PAYMENT_METHOD_MESSAGE
            )
            return {
                "success": False,
                "reason": "requires_payment_method",
                "message": REQUIRES_PAYMENT_METHOD_MESSAGE,
            }

        if status == "requires_action":
            return {"success": False, "reason": "requires_action", "action": "complete_authentication"}

        if status == "canceled":
            await self._mark_failed(
                application_id,
                intent,
                PaymentOrderStatus.CANCELLED,
                intent.get("cancellation_reason") or "canceled",
            )
            return {"success": False, "reason": "payment_canceled"}

        logger.warning(
            "Recovery found unexpected intent status",
            extra_data={"payment_intent_id": payment_intent_id, "status": status},
        )
        return {"success": False, "reason": "unknown_status", "status": status}

    async def _handle_requires_capture(
        self,
        application_id: int,
        intent: Any,
        attempt_count: int,
        operation: OperationClass,
    ) -> dict[str, Any]:
        payment_intent_id = intent["id"]
        async with self._session_factory() as db:
            application = await ApplicationRepository(db).get(application_id)
        application_status = application.status if application else None

        if application_status not in {s.value for s in AUTO_CAPTURE_STATUSES}:
            await self._alerts.send_alert(
                title="Payment Requires Manual Capture",
                message=f"Payment {payment_intent_id} for application {application_id} is authorized but not captured",
                severity=AlertSeverity.MEDIUM,
                details={
                    "application_id": application_id,
                    "payment_intent_id": payment_intent_id,
                    "application_status": application_status,
                },
            )
            return {"success": False, "reason": "requires_manual_capture"}

        try:
            captured = await self._gateway.capture_payment_intent(payment_intent_id, operation)
        except Exception as e:
            await self._alerts.send_alert(
                title="Payment Capture Failed",
                message=f"Capture of {payment_intent_id} for application {application_id} failed",
                severity=AlertSeverity.HIGH,
                details={
                    "application_id": application_id,
                    "payment_intent_id": payment_intent_id,
                    "error": str(e),
                },
            )
            return {"success": False, "reason": "capture_failed", "error": str(e)}

        logger.info(
            "Captured authorized payment during recovery",
            extra_data={"application_id": application_id, "payment_intent_id": payment_intent_id},
        )
        return await self._apply_intent_status(
            application_id, captured, attempt_count, operation=operation, allow_actions=False
        )

    # ------------------------------------------------------------------
    # Local state writes
    # ------------------------------------------------------------------

    async def _mark_succeeded(self, application_id: int, intent: Any, *, source: str) -> None:
        """Converge order and application on a succeeded intent, whatever their prior state."""
        async with self._session_factory() as db:
            orders = PaymentOrderRepository(db)
            order = await orders.get_or_create_for_intent(application_id, intent)
            await orders.transition(order, PaymentOrderStatus.SUCCEEDED, provider_status="succeeded")
            await ApplicationRepository(db).update_status(
                application_id, ApplicationStatus.PAYMENT_PROCESSING, payment_intent_id=intent["id"]
            )
            await db.commit()
        await self._events.payment_confirmed(application_id, intent["id"], source)

    async def _mark_failed(
        self,
        application_id: int,
        intent: Any,
        status: PaymentOrderStatus,
        reason: str,
    ) -> None:
        async with self._session_factory() as db:
            orders = PaymentOrderRepository(db)
            order = await orders.get_or_create_for_intent(application_id, intent)
            changed = await orders.transition(
                order, status, provider_status=intent["status"], failure_reason=reason
            )
            if changed:
                await ApplicationRepository(db).update_status(application_id, ApplicationStatus.PAYMENT_FAILED)
            await db.commit()

    async def _sync_open_status(self, application_id: int, intent: Any) -> None:
        async with self._session_factory() as db:
            orders = PaymentOrderRepository(db)
            order = await orders.get_or_create_for_intent(application_id, intent)
            changed = await orders.transition(
                order, order_status_for(intent["status"]), provider_status=intent["status"]
            )
            if changed:
                await ApplicationRepository(db).update_status(
                    application_id, application_status_for(intent["status"], order.method)
                )
            await db.commit()

    # ------------------------------------------------------------------
    # Re-checks
    # ------------------------------------------------------------------

    def _schedule_recheck(self, application_id: int, payment_intent_id: str, delay: int) -> None:
        """Keep exactly one pending re-check per intent."""
        key = (application_id, payment_intent_id)
        existing = self._rechecks.pop(key, None)
        if existing is not None and existing is not asyncio.current_task() and not existing.done():
            existing.cancel()
        self._rechecks[key] = asyncio.create_task(
            self._recheck(application_id, payment_intent_id, delay),
            name=f"payment-recheck:{application_id}:{payment_intent_id}",
        )
        logger.info(
            "Payment re-check scheduled",
            extra_data={
                "application_id": application_id,
                "payment_intent_id": payment_intent_id,
                "delay_seconds": delay,
            },
        )

    async def _recheck(self, application_id: int, payment_intent_id: str, delay: int) -> None:
        key = (application_id, payment_intent_id)
        try:
            await self._sleep(delay)
            await self.attempt_payment_recovery(
                application_id, payment_intent_id, {"trigger": "scheduled_recheck"}
            )
        finally:
            if self._rechecks.get(key) is asyncio.current_task():
                del self._rechecks[key]

    def pending_rechecks(self) -> int:
        return sum(1 for t in self._rechecks.values() if not t.done())

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_payment_status(self, application_id: int) -> dict[str, Any]:
        """
        Align the latest local order with the provider's view.

        Bypasses the attempt budget and the recovery breaker.
        """
        try:
            async with self._session_factory() as db:
                application = await ApplicationRepository(db).get(application_id)
                if application is None:
                    return {
                        "success": False,
                        "reason": "reconciliation_error",
                        "error": f"Application {application_id} not found",
                    }
                orders = PaymentOrderRepository(db)
                order = await orders.get_latest_for_application(application_id)
                if order is None and not application.payment_intent_id:
                    return {"success": False, "reason": "no_payment_order"}

                payment_intent_id = order.payment_intent_id if order else application.payment_intent_id
                intent = await self._gateway.retrieve_payment_intent(
                    payment_intent_id, operation_for(order.method if order else None)
                )
                if order is None:
                    order = await orders.get_or_create_for_intent(application_id, intent)

                provider_status = intent["status"]
                target = order_status_for(provider_status)
                old_status = order.status

                # A failed card attempt leaves the intent waiting for a new payment method
                failed_awaiting_method = (
                    old_status == PaymentOrderStatus.FAILED.value
                    and provider_status == "requires_payment_method"
                )
                if old_status == target.value or failed_awaiting_method:
                    if order.provider_status != provider_status:
                        await orders.transition(order, target, provider_status=provider_status)
                        await db.commit()
                    return {"success": True, "reason": "status_in_sync", "status": old_status}

                changed = await orders.transition(order, target, provider_status=provider_status)
                if not changed:
                    await db.commit()
                    await self._alerts.send_alert(
                        title="Payment Status Divergence",
                        message=(
                            f"Order {payment_intent_id} is {order.status} locally "
                            f"but {provider_status} at the provider"
                        ),
                        severity=AlertSeverity.MEDIUM,
                        details={
                            "application_id": application_id,
                            "payment_intent_id": payment_intent_id,
                            "local_status": order.status,
                            "provider_status": provider_status,
                        },
                    )
                    return {
                        "success": False,
                        "reason": "status_divergence",
                        "local_status": order.status,
                        "provider_status": provider_status,
                    }

                if target == PaymentOrderStatus.SUCCEEDED:
                    app_status = ApplicationStatus.PAYMENT_PROCESSING
                elif target in TERMINAL_STATUSES:
                    app_status = ApplicationStatus.PAYMENT_FAILED
                else:
                    app_status = application_status_for(provider_status, order.method)
                await ApplicationRepository(db).update_status(
                    application_id, app_status, payment_intent_id=payment_intent_id
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "Payment reconciliation failed",
                extra_data={"application_id": application_id, "error": str(e)},
                exc_info=True,
            )
            return {"success": False, "reason": "reconciliation_error", "error": str(e)}

        if target == PaymentOrderStatus.SUCCEEDED:
            await self._events.payment_confirmed(application_id, payment_intent_id, "reconciliation")
        logger.info(
            "Payment status reconciled",
            extra_data={
                "application_id": application_id,
                "payment_intent_id": payment_intent_id,
                "old_status": old_status,
                "new_status": target.value,
            },
        )
        return {
            "success": True,
            "reason": "status_updated",
            "old_status": old_status,
            "new_status": target.value,
        }

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_recovery_status(self, application_id: int, payment_intent_id: str) -> dict[str, Any]:
        async with self._session_factory() as db:
            attempt = await RecoveryAttemptRepository(db).get(application_id, payment_intent_id)

        attempts = attempt.attempt_count if attempt else 0
        status = attempt.recovery_status if attempt else RecoveryStatus.NOT_ATTEMPTED.value
        return {
            "application_id": application_id,
            "payment_intent_id": payment_intent_id,
            "attempts": attempts,
            "max_attempts": self.max_attempts,
            "can_retry": attempts < self.max_attempts and status != RecoveryStatus.SUCCEEDED.value,
            "last_attempt_time": attempt.last_attempt_time if attempt else None,
            "next_attempt_delay": self.get_recheck_delay(attempts + 1),
            "status": status,
            "last_error": attempt.last_error if attempt else None,
        }

    async def get_recovery_stats(self, hours: int = 24) -> dict[str, int]:
        async with self._session_factory() as db:
            return await RecoveryAttemptRepository(db).stats(hours)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "recovery_attempts": self._metrics["recovery_attempts"],
            "successful_recoveries": self._metrics["successful_recoveries"],
            "failed_recoveries": self._metrics["failed_recoveries"],
            "circuit_breaker_trips": self._metrics["circuit_breaker_trips"],
            "pending_rechecks": self.pending_rechecks(),
            "circuit_breaker": self._breaker.to_dict(),
        }
