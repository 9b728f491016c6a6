from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from payment_recon.core.config import settings


def make_celery() -> Celery:
    app = Celery("payment_recon", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment == "dev",
        task_eager_propagates=True,
        task_track_started=True,
        # Ingestion is idempotent per origin, so a redelivered poll is harmless.
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule={
            "poll-mailboxes": {
                "task": "poll_mailboxes",
                "schedule": settings.mailbox_poll_minutes * 60.0,
            },
            "refresh-overdue-invoices": {
                "task": "refresh_overdue_invoices",
                "schedule": crontab(minute=0, hour=settings.overdue_refresh_hour_utc),
            },
        },
        timezone="UTC",
    )
    app.autodiscover_tasks(["payment_recon.worker.tasks"])
    return app


celery_app = make_celery()
