"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "puppy_reservations",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "expire-pending-reservations-every-5-minutes": {
        "task": "app.workers.tasks.expire_pending_reservations",
        "schedule": 300.0,  # 5 minutes
    },
    # Daily at 03:00 UTC
    "archive-sold-puppies-daily": {
        "task": "app.workers.tasks.archive_sold_puppies",
        "schedule": crontab(hour="3", minute="0"),
    },
    "report-stuck-webhook-events-every-15-minutes": {
        "task": "app.workers.tasks.report_stuck_webhook_events",
        "schedule": 900.0,  # 15 minutes
    },
}
