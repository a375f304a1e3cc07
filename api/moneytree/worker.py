from celery import Celery
from celery.schedules import crontab

from moneytree.core.config import settings

celery_app = Celery(
    "moneytree",
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
    "dispatch-incremental-syncs": {
        "task": "moneytree.services.sync.dispatch_incremental_syncs",
        "schedule": crontab(minute=0, hour="*/6"),
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "moneytree.services.sync",
]
