"""SerialStock — Celery worker configuration."""
from celery import Celery

from serialstock.config import get_settings

settings = get_settings()

celery_app = Celery(
    "serialstock",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
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
    task_default_retry_delay=60,
    task_routes={
        "serialstock.tasks.*": {"queue": "default"},
    },
    include=["serialstock.tasks.unit_tasks"],
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "release-expired-reservations": {
        "task": "serialstock.tasks.unit_tasks.release_expired_reservations",
        "schedule": settings.RESERVATION_SWEEP_SECONDS,
    },
    "sync-stock-counters": {
        "task": "serialstock.tasks.unit_tasks.sync_stock_counters",
        "schedule": settings.STOCK_SYNC_SECONDS,
    },
}
