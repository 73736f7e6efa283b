"""Celery application factory for background attendance alerts."""
from __future__ import annotations

import os
from celery import Celery
from celery.schedules import crontab

DEFAULT_BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
DEFAULT_BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", DEFAULT_BROKER_URL)


def create_celery_app() -> Celery:
    """Create and configure the Celery app for the project."""
    celery_app = Celery(
        "attendance_alerts",
        broker=DEFAULT_BROKER_URL,
        backend=DEFAULT_BACKEND_URL,
        include=["notifications.tasks"],
    )

    celery_app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=os.getenv("CELERY_TIMEZONE", "UTC"),
        enable_utc=True,
        worker_concurrency=int(os.getenv("CELERY_WORKER_CONCURRENCY", "1")),
        beat_schedule={
            "reset-daily-attendance": {
                "task": "notifications.tasks.reset_daily_flags",
                "schedule": crontab(hour=int(os.getenv("ATTENDANCE_RESET_HOUR", "5")), minute=0),
            },
        },
    )

    return celery_app


celery_app = create_celery_app()
