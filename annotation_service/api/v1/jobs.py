from fastapi import APIRouter, HTTPException, BackgroundTasks, Depends, Query, Body
from contextlib import contextmanager
from typing import List, Optional
from ...schemas.annotation import AnnotatedToken
from ...schemas.job import (
    ContinueRequest,
    DocumentJobRequest,
    Job,
    JobResponse,
    JobStatus,
    ReclassificationCriteria,
    ReclassificationJobRequest,
    ReclassificationStats,
    WatchdogOutcome,
)
from ...core.errors import ChunkConflictError, InvalidTransitionError, JobNotFoundError, WorkSetError
from ...core.orchestrator import JobOrchestrator, get_orchestrator
from ...core.watchdog import StuckJobWatchdog, get_watchdog
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@contextmanager
def job_errors():
    """Map orchestration errors onto HTTP errors"""
    try:
        yield
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidTransitionError, ChunkConflictError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except WorkSetError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _response(orchestrator: JobOrchestrator, job: Job) -> JobResponse:
    return JobResponse(job=job, progress=orchestrator.progress_for(job))


@router.post("/documents", response_model=JobResponse, status_code=201)
def create_document_job(
    request: DocumentJobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """
    Create a job that annotates a collection of documents chunk by chunk
    """
    with job_errors():
        job = orchestrator.create_document_job(request.collection_id, request.documents, request.chunk_size)
        if request.start:
            orchestrator.start(job.id)
        return _response(orchestrator, orchestrator.get_job(job.id))


@router.post("/reclassification/analyze", response_model=ReclassificationStats)
def analyze_reclassification(
    criteria: ReclassificationCriteria,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ReclassificationStats:
    """
    Count the words a reclassification job would pick up, without creating it
    """
    return orchestrator.analyze_reclassification(criteria)


@router.post("/reclassification", response_model=JobResponse, status_code=201)
def create_reclassification_job(
    request: ReclassificationJobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """
    Create a job that re-runs semantic classification for unclassified or
    low-confidence words
    """
    with job_errors():
        job = orchestrator.create_reclassification_job(request.criteria, request.chunk_size)
        if request.start:
            orchestrator.start(job.id)
        return _response(orchestrator, orchestrator.get_job(job.id))


@router.get("", response_model=List[JobResponse])
def list_jobs(
    status: Optional[List[JobStatus]] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> List[JobResponse]:
    return [_response(orchestrator, job) for job in orchestrator.list_jobs(status, limit)]


@router.post("/watchdog/sweep", response_model=List[WatchdogOutcome])
def sweep_stuck_jobs(watchdog: StuckJobWatchdog = Depends(get_watchdog)) -> List[WatchdogOutcome]:
    """
    Run the stuck-job watchdog once
    """
    return watchdog.sweep()


@router.get("/emergency-stop")
def emergency_status(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    if orchestrator.kill_switch is None:
        return {"enabled": False, "active": False, "ttl_seconds": None}
    return orchestrator.kill_switch.status()


@router.post("/emergency-stop")
def emergency_stop(
    reason: Optional[str] = Body(None, embed=True),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Halt all continuations and cancel every active job
    """
    cancelled = orchestrator.emergency_stop(reason)
    logger.critical("Emergency stop cancelled %d jobs", len(cancelled))
    return {"cancelled": [job.id for job in cancelled]}


@router.delete("/emergency-stop")
def clear_emergency_stop(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    if orchestrator.kill_switch is None or not orchestrator.kill_switch.clear():
        raise HTTPException(status_code=503, detail="Kill switch unavailable")
    return {"cleared": True}


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobResponse:
    """
    Get a job with its progress, throughput and ETA
    """
    with job_errors():
        return _response(orchestrator, orchestrator.get_job(job_id))


@router.get("/{job_id}/results", response_model=List[AnnotatedToken])
def get_job_results(
    job_id: str,
    document_index: Optional[int] = Query(None, ge=0),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> List[AnnotatedToken]:
    with job_errors():
        return orchestrator.get_results(job_id, document_index)


@router.post("/{job_id}/continue", status_code=202)
def continue_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[ContinueRequest] = None,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Continuation trigger: process the job's next chunk in the background.
    Calling it for a stale cursor or a finished job is harmless.
    """
    with job_errors():
        job = orchestrator.get_job(job_id)

    expected_offset = request.expected_offset if request else None
    background_tasks.add_task(orchestrator.process_next_chunk, job_id, expected_offset)
    return {"job_id": job_id, "status": job.status, "accepted": True}


@router.post("/{job_id}/pause", response_model=JobResponse)
def pause_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobResponse:
    with job_errors():
        return _response(orchestrator, orchestrator.pause(job_id))


@router.post("/{job_id}/resume", response_model=JobResponse)
def resume_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobResponse:
    with job_errors():
        return _response(orchestrator, orchestrator.resume(job_id))


@router.post("/{job_id}/force-resume", response_model=JobResponse)
def force_resume_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobResponse:
    """
    Manually re-trigger a running job that stopped making progress
    """
    with job_errors():
        return _response(orchestrator, orchestrator.force_resume(job_id))


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobResponse:
    with job_errors():
        return _response(orchestrator, orchestrator.cancel(job_id))
