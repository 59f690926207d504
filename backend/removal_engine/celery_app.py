from celery import Celery
from celery.schedules import crontab

from removal_engine.config import settings

celery_app = Celery(
    "removal_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["removal_engine.tasks.removal_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    result_extended=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # A run must not outlive its lock lease
    task_time_limit=settings.job_lock_lease_seconds,
)

celery_app.conf.beat_schedule = {
    "process-removals": {
        "task": "removal_engine.tasks.removal_tasks.process_removals_task",
        "schedule": crontab(minute=0, hour="*/2"),
    },
    "auto-verify-removals": {
        "task": "removal_engine.tasks.removal_tasks.auto_verify_removals_task",
        "schedule": crontab(minute=0, hour=4),
    },
    "cleanup-execution-logs": {
        "task": "removal_engine.tasks.removal_tasks.cleanup_execution_logs_task",
        "schedule": crontab(minute=30, hour=3),
    },
}
