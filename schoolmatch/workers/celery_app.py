from celery import Celery

from schoolmatch.core.config import get_settings
from schoolmatch.core.logging import configure_logging

settings = get_settings()
configure_logging(settings)

celery_app = Celery(
    "schoolmatch",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "process-email-notifications": {
            "task": "notifications.process_queue",
            "schedule": settings.NOTIFICATION_PROCESS_INTERVAL_SECONDS,
        },
    },
)

# Task modules are named directly, not discovered as <package>.tasks
celery_app.autodiscover_tasks(
    ["schoolmatch.workers.notifications"],
    related_name=None,
)
