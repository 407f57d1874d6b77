"""
Celery Tasks for the payment reliability layer

Scheduled reconciliation, ledger cleanup and on-demand recovery. Each task
runs in its own event loop with its own engine, Redis client and service
container; nothing async is shared across tasks.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from permit_payments.workers.celery_app import celery_app
from permit_payments.core.config import settings
from permit_payments.core.logging import get_logger, set_correlation_id
from permit_payments.db.database import get_task_engine
from permit_payments.domain.container import PaymentServices

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks (recovery re-checks scheduled by this run)
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@asynccontextmanager
async def task_services() -> AsyncIterator[PaymentServices]:
    """A started PaymentServices bound to this task's loop."""
    redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with get_task_engine() as session_factory:
            services = PaymentServices(settings=settings, redis=redis, session_factory=session_factory)
            await services.start()
            try:
                yield services
            finally:
                await services.stop()
    finally:
        await redis.aclose()


@celery_app.task(name="permit_payments.workers.tasks.reconcile_stuck_payments")
def reconcile_stuck_payments() -> dict:
    """Reconcile applications stuck in a payment state and resume abandoned recoveries."""

    async def _reconcile():
        async with task_services() as services:
            return await services.reconciliation.reconcile_stuck_payments()

    return run_async(_reconcile())


@celery_app.task(name="permit_payments.workers.tasks.cleanup_payment_records")
def cleanup_payment_records() -> dict:
    """Purge old recovery attempts and processed webhook events."""

    async def _cleanup():
        async with task_services() as services:
            return await services.reconciliation.cleanup()

    return run_async(_cleanup())


@celery_app.task(name="permit_payments.workers.tasks.recover_payment")
def recover_payment(application_id: int, payment_intent_id: str, trigger: str = "task") -> dict:
    """
    Run one recovery attempt outside the request cycle.

    A still_processing result is returned as-is; the in-process re-check dies
    with the task loop and the next reconciliation sweep picks the payment up.
    """

    async def _recover():
        async with task_services() as services:
            result = await services.recovery.attempt_payment_recovery(
                application_id, payment_intent_id, {"trigger": trigger}
            )
        logger.info(
            "Recovery task finished",
            extra_data={
                "application_id": application_id,
                "reason": result.get("reason"),
                "success": result.get("success"),
            },
        )
        return result

    return run_async(_recover())
