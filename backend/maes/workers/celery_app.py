"""
Celery application configuration
"""
from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from maes.core.config import settings

celery_app = Celery(
    "maes",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["maes.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    # Priorities 1 (critical) .. 4 (low); lower is served first on the Redis transport
    broker_transport_options={"queue_order_strategy": "priority", "priority_steps": [0, 1, 2, 3, 4]},
)

# extraction/analysis queues are consumed by the external executor workers.
# Run this service's worker with:
#   celery -A maes.workers.celery_app worker -Q orchestration
#   celery -A maes.workers.celery_app beat
celery_app.conf.task_queues = (
    Queue(settings.ORCHESTRATION_QUEUE),
    Queue(settings.EXTRACTION_QUEUE),
    Queue(settings.ANALYSIS_QUEUE),
)

# Default queue
celery_app.conf.task_default_queue = settings.ORCHESTRATION_QUEUE

# Task routing
celery_app.conf.task_routes = {
    "maes.workers.tasks.*": {"queue": settings.ORCHESTRATION_QUEUE},
}

# Retry policies
celery_app.conf.task_annotations = {
    "maes.workers.tasks.purge_organization_task": {
        "max_retries": 3,
        "default_retry_delay": 60,
    },
}

# Periodic sweeps
celery_app.conf.beat_schedule = {
    "sweep-due-offboards": {
        "task": "maes.workers.tasks.sweep_due_offboards_task",
        "schedule": crontab(minute="*/15"),
    },
    "expire-overdue-jobs": {
        "task": "maes.workers.tasks.expire_overdue_jobs_task",
        "schedule": 30.0,
    },
    "prune-job-logs": {
        "task": "maes.workers.tasks.prune_job_logs_task",
        "schedule": crontab(hour=3, minute=0),
    },
}
