from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "schoolsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
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
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "sync-conta-azul-daily": {
        "task": "app.services.sync.sync_all_schools",
        "schedule": crontab(hour=settings.daily_sync_hour, minute=0),
    },
}

# Task modules live under services/, not in a tasks.py autodiscover would find
celery_app.conf.include = [
    "app.services.sync",
    "app.services.notifications",
]
