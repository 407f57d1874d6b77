"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from permit_payments.core.config import settings

celery_app = Celery(
    "permit_payments",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["permit_payments.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/Mexico_City",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes; a sweep makes one provider call per stuck application
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "reconcile-stuck-payments-every-15-minutes": {
        "task": "permit_payments.workers.tasks.reconcile_stuck_payments",
        "schedule": 900.0,
    },
    # Off-peak, after the nightly batch of OXXO vouchers expires
    "cleanup-payment-records-daily": {
        "task": "permit_payments.workers.tasks.cleanup_payment_records",
        "schedule": crontab(hour="4", minute="0"),
    },
}
