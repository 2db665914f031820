"""Celery application factory for background notification tasks."""
from __future__ import annotations

import os
from celery import Celery
from celery.schedules import crontab

DEFAULT_BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
DEFAULT_BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", DEFAULT_BROKER_URL)


def tick_minutes(raw: str | None = None) -> int:
    """Minutes between due-drain ticks; valid in a crontab minute step (1-59)."""
    value = int(raw if raw is not None else os.getenv("NOTIFY_TICK_MINUTES", "1"))
    if not 1 <= value <= 59:
        raise ValueError(f"NOTIFY_TICK_MINUTES must be between 1 and 59, got {value}")
    return value


def create_celery_app() -> Celery:
    """Create and configure the Celery app for the notification worker and beat."""
    celery_app = Celery(
        "calendar_notifications",
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
        beat_schedule={
            "process-due-notifications": {
                "task": "notifications.tasks.process_due_notifications",
                "schedule": crontab(minute=f"*/{tick_minutes()}"),
            },
        },
    )

    return celery_app


celery_app = create_celery_app()
