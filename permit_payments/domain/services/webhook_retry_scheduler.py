"""
Webhook Retry Scheduler - owns the retry chain for failed webhook events.

Attempt n runs after ``retry_delays[n]`` seconds (the last delay is reused
past the end of the table). A failed attempt n schedules attempt n + 1;
scheduling attempt ``max_retries`` instead marks the event
failed_permanent and raises exactly one HIGH alert.

Pending attempts are asyncio tasks keyed by event id. Scheduling an event
that already has a pending task replaces it. ``stop()`` cancels all of
them; an event interrupted this way stays ``failed``/``pending`` in the
database and is picked up again by the stale-event takeover.
"""
import asyncio
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permit_payments.core.logging import get_logger
from permit_payments.db.database import commit_and_notify
from permit_payments.db.repositories import WebhookEventRepository
from permit_payments.domain.services.alert_service import AlertService, AlertSeverity

logger = get_logger(__name__)

MAX_RETRIES_REASON = "Max retries exceeded"

ProcessFn = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[Any]]


class WebhookRetryScheduler:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: AlertService,
        max_retries: int = 3,
        retry_delays: Sequence[int] = (60, 300, 900),
        sleep: SleepFn = asyncio.sleep,
    ):
        if not retry_delays:
            raise ValueError("retry_delays must not be empty")
        self._session_factory = session_factory
        self._alerts = alerts
        self.max_retries = max_retries
        self.retry_delays = list(retry_delays)
        self._sleep = sleep
        self._pending: dict[str, asyncio.Task] = {}
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "Webhook retry scheduler started",
            extra_data={"max_retries": self.max_retries, "retry_delays": self.retry_delays},
        )

    async def stop(self) -> None:
        self._running = False
        await self.clear_all_retries()
        logger.info("Webhook retry scheduler stopped")

    def get_retry_delay(self, attempt_number: int) -> int:
        index = min(max(attempt_number, 0), len(self.retry_delays) - 1)
        return self.retry_delays[index]

    def has_pending_retry(self, event_id: str) -> bool:
        task = self._pending.get(event_id)
        return task is not None and not task.done()

    def _drop_pending(self, event_id: str) -> None:
        """Cancel the pending task for ``event_id`` unless it is the caller."""
        task = self._pending.pop(event_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def schedule_retry(
        self,
        event_id: str,
        attempt_number: int,
        process_fn: ProcessFn,
        payload: dict[str, Any],
    ) -> bool:
        """
        Schedule attempt ``attempt_number`` for ``event_id``.

        Returns False when the chain is exhausted and the event was handed
        to mark_as_failed instead.
        """
        if attempt_number >= self.max_retries:
            await self.mark_as_failed(event_id, MAX_RETRIES_REASON)
            return False

        if not self._running:
            logger.warning(
                "Retry requested while scheduler is stopped",
                extra_data={"event_id": event_id, "attempt": attempt_number},
            )
            return False

        self._drop_pending(event_id)
        delay = self.get_retry_delay(attempt_number)
        task = asyncio.create_task(
            self._run_attempt(event_id, attempt_number, process_fn, payload, delay),
            name=f"webhook-retry:{event_id}:{attempt_number}",
        )
        self._pending[event_id] = task

        logger.info(
            "Webhook retry scheduled",
            extra_data={"event_id": event_id, "attempt": attempt_number, "delay_seconds": delay},
        )
        return True

    async def _run_attempt(
        self,
        event_id: str,
        attempt_number: int,
        process_fn: ProcessFn,
        payload: dict[str, Any],
        delay: float,
    ) -> None:
        await self._sleep(delay)

        try:
            async with self._session_factory() as db:
                try:
                    await process_fn(db, payload)
                    await WebhookEventRepository(db).mark_processed(event_id)
                    await commit_and_notify(db)
                except Exception:
                    await db.rollback()
                    raise
        except Exception as e:
            logger.warning(
                "Webhook retry attempt failed",
                extra_data={"event_id": event_id, "attempt": attempt_number, "error": str(e)},
            )
            await self._record_failure(event_id, str(e) or type(e).__name__, attempt_number + 1)
            self._forget(event_id)
            await self.schedule_retry(event_id, attempt_number + 1, process_fn, payload)
            return

        self._forget(event_id)
        logger.info(
            "Webhook retry succeeded",
            extra_data={"event_id": event_id, "attempt": attempt_number},
        )

    def _forget(self, event_id: str) -> None:
        if self._pending.get(event_id) is asyncio.current_task():
            del self._pending[event_id]

    async def _record_failure(self, event_id: str, error: str, retry_count: int) -> None:
        try:
            async with self._session_factory() as db:
                await WebhookEventRepository(db).mark_failed(event_id, error, retry_count=retry_count)
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to persist webhook retry failure",
                extra_data={"event_id": event_id, "error": str(e)},
                exc_info=True,
            )

    async def mark_as_failed(self, event_id: str, reason: str) -> None:
        """
        Mark ``event_id`` failed_permanent and alert once. Never raises.

        A repeated call for an event that is already final does not alert
        again.
        """
        self._drop_pending(event_id)

        newly_failed = True
        try:
            async with self._session_factory() as db:
                newly_failed = await WebhookEventRepository(db).mark_failed_permanent(event_id, reason)
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to persist permanent webhook failure",
                extra_data={"event_id": event_id, "reason": reason, "error": str(e)},
                exc_info=True,
            )

        if not newly_failed:
            logger.info(
                "Webhook event already final, not alerting again",
                extra_data={"event_id": event_id},
            )
            return

        logger.error(
            "Webhook processing failed permanently",
            extra_data={"event_id": event_id, "reason": reason, "max_retries": self.max_retries},
        )
        try:
            await self._alerts.send_alert(
                title="Webhook Processing Failed Permanently",
                message=f"Webhook {event_id} failed after {self.max_retries} retries",
                severity=AlertSeverity.HIGH,
                details={"event_id": event_id, "reason": reason, "max_retries": self.max_retries},
            )
        except Exception as e:
            logger.error(
                "Failed to send permanent webhook failure alert",
                extra_data={"event_id": event_id, "error": str(e)},
                exc_info=True,
            )

    def cancel_retry(self, event_id: str) -> bool:
        task = self._pending.pop(event_id, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.info("Webhook retry cancelled", extra_data={"event_id": event_id})
        return True

    async def clear_all_retries(self) -> int:
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cleared pending webhook retries", extra_data={"count": len(tasks)})
        return len(tasks)

    def get_retry_stats(self) -> dict[str, Any]:
        return {
            "pending_retries": sum(1 for t in self._pending.values() if not t.done()),
            "max_retries": self.max_retries,
            "retry_delays": list(self.retry_delays),
        }
