"""
Reconciliation Service - scheduled sweep over payments that stopped moving.

Run by Celery beat. Per-item failures are counted and the sweep moves on;
only an error that aborts the whole sweep raises a CRITICAL alert.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permit_payments.core.logging import get_logger
from permit_payments.db.models.application import RECONCILABLE_STATUSES
from permit_payments.db.repositories import (
    ApplicationRepository,
    RecoveryAttemptRepository,
    WebhookEventRepository,
)
from permit_payments.domain.services.alert_service import AlertService, AlertSeverity
from permit_payments.domain.services.payment_recovery_service import PaymentRecoveryService

logger = get_logger(__name__)

STUCK_RECOVERY_MINUTES = 30
STUCK_RECOVERY_LIMIT = 100
WEBHOOK_PAYLOAD_RETENTION_DAYS = 30


class ReconciliationService:
    def __init__(
        self,
        *,
        recovery: PaymentRecoveryService,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: AlertService,
        stuck_after_minutes: int = 60,
        batch_size: int = 50,
    ):
        self._recovery = recovery
        self._session_factory = session_factory
        self._alerts = alerts
        self.stuck_after_minutes = stuck_after_minutes
        self.batch_size = batch_size

    async def reconcile_stuck_payments(self) -> dict[str, Any]:
        """Reconcile stale applications, then resume abandoned recoveries."""
        summary = {"checked": 0, "updated": 0, "in_sync": 0, "errors": 0, "recoveries_resumed": 0}
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.stuck_after_minutes)
            async with self._session_factory() as db:
                applications = await ApplicationRepository(db).find_stuck(
                    RECONCILABLE_STATUSES, cutoff, self.batch_size
                )
                application_ids = [a.id for a in applications]

            for application_id in application_ids:
                summary["checked"] += 1
                result = await self._recovery.reconcile_payment_status(application_id)
                if result["success"] and result["reason"] == "status_updated":
                    summary["updated"] += 1
                elif result["success"]:
                    summary["in_sync"] += 1
                else:
                    summary["errors"] += 1

            async with self._session_factory() as db:
                stuck = await RecoveryAttemptRepository(db).find_stuck(
                    STUCK_RECOVERY_MINUTES, self._recovery.max_attempts, STUCK_RECOVERY_LIMIT
                )
                pairs = [(a.application_id, a.payment_intent_id) for a in stuck]

            for application_id, payment_intent_id in pairs:
                result = await self._recovery.attempt_payment_recovery(
                    application_id, payment_intent_id, {"trigger": "reconciliation_sweep"}
                )
                summary["recoveries_resumed"] += 1
                if not result["success"] and result["reason"] == "recovery_error":
                    summary["errors"] += 1
        except Exception as e:
            logger.critical("Reconciliation sweep aborted", extra_data={"error": str(e)}, exc_info=True)
            await self._alerts.send_alert(
                title="Payment Reconciliation Sweep Failed",
                message=f"Reconciliation sweep aborted: {e}",
                severity=AlertSeverity.CRITICAL,
                details=summary,
            )
            raise

        logger.info("Reconciliation sweep finished", extra_data=summary)
        return summary

    async def cleanup(self) -> dict[str, int]:
        """
        Compact old processed webhook payloads.

        Recovery attempts and webhook event rows are kept: the former are the
        audit trail and attempt budget, the latter the dedup ledger.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=WEBHOOK_PAYLOAD_RETENTION_DAYS)
        async with self._session_factory() as db:
            compacted = await WebhookEventRepository(db).compact_processed_before(cutoff)
            await db.commit()
        result = {"webhook_payloads_compacted": compacted}
        logger.info("Payment ledger cleanup finished", extra_data=result)
        return result
