import os

from celery import Celery
from celery.schedules import crontab

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery(
    "droproom",
    broker=CELERY_BROKER_URL,
    include=["droproom.workers.lifecycle"],
)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

celery_app.conf.beat_schedule = {
    "room-expiry-sweep": {
        "task": "droproom.workers.lifecycle.run_room_sweep",
        "schedule": crontab(minute=os.getenv("ROOM_SWEEP_CRON_MINUTE", "0")),
    },
    "orphaned-blob-reconciliation": {
        "task": "droproom.workers.lifecycle.run_blob_reconciliation",
        "schedule": crontab(hour=os.getenv("BLOB_RECONCILE_CRON_HOUR", "3"), minute=30),
    },
}
