"""
Celery application configuration.

Beat drives the stateless database jobs: the daily credit note run, retries
of undelivered credit note emails, and exchange rate refreshes. Timer loops
that depend on in-process state (webhook health, safety nets) run on the
asyncio scheduler started by ``bootstrap.Platform``.
"""

from typing import Any

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from simdesk.platform.settings import settings

# Create Celery application
celery_app = Celery(
    "simdesk_platform",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["simdesk.platform.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_routes={
        "credit_notes.*": {"queue": "billing"},
        "currency.*": {"queue": "default"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.billing.business_timezone,
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the beat schedule."""
    from simdesk.platform.tasks import (
        process_daily_credit_notes_task,
        refresh_exchange_rates_task,
        retry_credit_note_notifications_task,
    )

    billing = settings.billing

    # Daily credit notes, late evening in business time
    sender.add_periodic_task(
        crontab(hour=billing.credit_note_run_hour, minute=billing.credit_note_run_minute),
        process_daily_credit_notes_task.s(),
        name="credit-notes-daily-run",
    )

    sender.add_periodic_task(
        3600.0,  # 1 hour
        retry_credit_note_notifications_task.s(),
        name="credit-notes-retry-notifications",
    )

    refresh_interval = max(300, billing.exchange_rate_refresh_minutes * 60)
    sender.add_periodic_task(
        float(refresh_interval),
        refresh_exchange_rates_task.s(),
        name="currency-refresh-rates",
    )


__all__ = ["celery_app"]
