"""
Ways to trigger "process the next chunk" for a job outside the current call.

A job never loops over its chunks in-process; after each chunk the
orchestrator hands the job to one of these schedulers, which either queues a
Celery task or fires an HTTP request at the service's own continue endpoint.
Failures are logged and reported, never raised: a job left without a
continuation is picked up by the stuck-job watchdog.
"""
from typing import List, Optional, Tuple
import logging

import requests

from .config import settings

logger = logging.getLogger(__name__)


class ContinuationScheduler:
    def schedule(self, job_id: str, expected_offset: Optional[int] = None) -> bool:
        raise NotImplementedError


class CeleryContinuationScheduler(ContinuationScheduler):
    def schedule(self, job_id: str, expected_offset: Optional[int] = None) -> bool:
        from ..workers.annotation_tasks import continue_job_task

        try:
            continue_job_task.apply_async(args=[job_id, expected_offset])
        except Exception as e:
            logger.error("Could not queue continuation for job %s: %s", job_id, e)
            return False
        return True


class HttpContinuationScheduler(ContinuationScheduler):
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.SERVICE_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.CONTINUATION_TIMEOUT_SECONDS

    def schedule(self, job_id: str, expected_offset: Optional[int] = None) -> bool:
        url = f"{self.base_url}{settings.API_V1_STR}/jobs/{job_id}/continue"
        try:
            response = requests.post(url, json={"expected_offset": expected_offset}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Continuation request for job %s failed: %s", job_id, e)
            return False
        return True


class RecordingScheduler(ContinuationScheduler):
    """Keeps continuations in a list; used by the CLI to drive jobs in the foreground"""

    def __init__(self):
        self.pending: List[Tuple[str, Optional[int]]] = []

    def schedule(self, job_id: str, expected_offset: Optional[int] = None) -> bool:
        self.pending.append((job_id, expected_offset))
        return True

    def pop(self) -> Optional[Tuple[str, Optional[int]]]:
        return self.pending.pop(0) if self.pending else None


def build_scheduler(mode: Optional[str] = None) -> ContinuationScheduler:
    mode = mode or settings.CONTINUATION_MODE
    if mode == "celery":
        return CeleryContinuationScheduler()
    if mode == "http":
        return HttpContinuationScheduler()
    if mode == "foreground":
        return RecordingScheduler()
    raise ValueError(f"Unknown continuation mode: {mode}")
