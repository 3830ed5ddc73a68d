"""Celery application configuration.

The beat schedule drives the intake and completion cycles when the engine
runs on Celery instead of the long-running asyncio worker.
"""

from celery import Celery
from celery.signals import worker_init, worker_process_init

from mediaflow.core.alerting import setup_default_thresholds
from mediaflow.core.config import settings

celery_app = Celery(
    "mediaflow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=4 * 3600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    "transcoding-intake-cycle": {
        "task": "mediaflow.modules.transcoding.tasks.run_intake_cycle_task",
        "schedule": settings.INTAKE_POLL_INTERVAL_SECONDS,
    },
    "transcoding-completion-cycle": {
        "task": "mediaflow.modules.transcoding.tasks.run_completion_cycle_task",
        "schedule": settings.COMPLETION_POLL_INTERVAL_SECONDS,
    },
}


@worker_init.connect
@worker_process_init.connect
def configure_worker_alerts(**kwargs) -> None:
    """Register alert thresholds in every worker process, whatever the pool."""
    setup_default_thresholds()


celery_app.autodiscover_tasks(["mediaflow.modules.transcoding"])
