"""
Celery Application Configuration
"""
from celery import Celery
from viewtrust.config import settings

# Create Celery app
celery_app = Celery(
    "viewtrust_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "viewtrust.worker.tasks"
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=270,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,  # Results expire after 1 hour
)

# Task routing
celery_app.conf.task_routes = {
    "viewtrust.worker.tasks.record_abuse_event": {"queue": "abuse"},
    "viewtrust.worker.tasks.*": {"queue": "default"},
}

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "reconcile-ledger": {
        "task": "viewtrust.worker.tasks.reconcile_ledger",
        "schedule": 3600.0,  # Every hour
    },
}

if __name__ == "__main__":
    celery_app.start()
