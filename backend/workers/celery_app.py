"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stocksentry",
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
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.health_check.*": {"queue": "alerts"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Beat polls every minute; the scheduler admits one pass per interval.
    beat_schedule={
        "health-check-all": {
            "task": "workers.health_check.run_health_check",
            "schedule": crontab(),
            "kwargs": {"check_kind": "all"},
            "options": {"queue": "alerts", "expires": 55},
        },
        "notification-retention-daily": {
            "task": "workers.health_check.purge_notifications",
            "schedule": crontab(hour=3, minute=15),
            "options": {"queue": "alerts"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
