"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings
from app.domain.services.scheduler import beat_schedule

celery_app = Celery(
    "mail_sync",
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
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # עדיפויות 0-9 על Redis: 1 = sync מ-webhook, 2 = fetch-message, 3 = קבצים ו-recovery
    broker_transport_options={
        "priority_steps": list(range(10)),
        "sep": ":",
        "queue_order_strategy": "priority",
    },
    task_default_priority=5,
)

# Beat schedule - נבנה מהגדרות ה-RecoveryScheduler
celery_app.conf.beat_schedule = beat_schedule()
