from celery import Celery
from typing import Optional
from ..core.config import settings
from ..core.errors import JobNotFoundError
from ..core.orchestrator import get_orchestrator
from ..core.watchdog import get_watchdog
import logging

logger = logging.getLogger(__name__)

# Initialize Celery app
celery_app = Celery('annotation_service')
celery_app.conf.broker_url = settings.CELERY_BROKER_URL
celery_app.conf.result_backend = settings.CELERY_RESULT_BACKEND
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.beat_schedule = {
    'sweep-stuck-jobs': {
        'task': 'annotation_service.workers.annotation_tasks.sweep_stuck_jobs_task',
        'schedule': float(settings.WATCHDOG_INTERVAL_SECONDS),
    },
}


@celery_app.task
def continue_job_task(job_id: str, expected_offset: Optional[int] = None) -> dict:
    """
    Celery task to process the next chunk of a job.
    Stale or duplicate deliveries are no-ops, so redelivery is safe.
    """
    try:
        outcome = get_orchestrator().process_next_chunk(job_id, expected_offset)
    except JobNotFoundError as e:
        logger.error(f"Continuation for unknown job: {str(e)}")
        return {"job_id": job_id, "outcome": "missing"}

    return outcome.model_dump(mode="json")


@celery_app.task
def sweep_stuck_jobs_task() -> list:
    """
    Celery beat task: check running jobs and auto-resume stalled ones
    """
    outcomes = get_watchdog().sweep()
    return [o.model_dump(mode="json") for o in outcomes]
