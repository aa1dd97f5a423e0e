from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    paused = "paused"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = {JobStatus.completed, JobStatus.failed, JobStatus.cancelled}
ACTIVE_STATUSES = {JobStatus.queued, JobStatus.running, JobStatus.paused}
# statuses in which a lost continuation leaves a job idle
STALLABLE_STATUSES = {JobStatus.queued, JobStatus.running}


class JobKind(str, Enum):
    document_annotation = "document_annotation"
    reclassification = "reclassification"


class RequestedAction(str, Enum):
    pause = "pause"
    cancel = "cancel"


class Cursor(BaseModel):
    """Resume position: a global unit offset plus document/word indexes"""
    offset: int = 0
    document: int = 0
    word: int = 0


class Job(BaseModel):
    id: str
    kind: JobKind
    status: JobStatus = JobStatus.queued
    collection_id: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    total_units: int = 0
    processed_units: int = 0
    new_units: int = 0
    cached_units: int = 0
    chunk_size: int
    chunks_processed: int = 0
    cursor: Cursor = Field(default_factory=Cursor)
    requested_action: Optional[RequestedAction] = None
    claim_token: Optional[str] = None
    resuming_since: Optional[datetime] = None
    auto_resume_attempts: int = 0
    last_auto_resume_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def resuming(self) -> bool:
        return self.resuming_since is not None

    @property
    def remaining_units(self) -> int:
        return max(0, self.total_units - self.processed_units)


class JobProgress(BaseModel):
    job_id: str
    status: JobStatus
    percent: float
    units_per_second: Optional[float] = None
    eta_seconds: Optional[float] = None
    eta: Optional[str] = None
    minutes_since_last_activity: Optional[int] = None
    is_stuck: bool = False
    needs_attention: bool = False


class JobResponse(BaseModel):
    job: Job
    progress: JobProgress


class DocumentInput(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None
    text: str


class DocumentJobRequest(BaseModel):
    collection_id: str
    documents: List[DocumentInput]
    chunk_size: Optional[int] = None
    start: Optional[bool] = True


class ReclassificationCriteria(BaseModel):
    include_unclassified: bool = True
    include_low_confidence: bool = False
    confidence_threshold: Optional[float] = None
    collection_id: Optional[str] = None


class ReclassificationJobRequest(BaseModel):
    criteria: ReclassificationCriteria
    chunk_size: Optional[int] = None
    start: Optional[bool] = True


class ReclassificationStats(BaseModel):
    total: int
    unclassified: int
    low_confidence: int


class ContinueRequest(BaseModel):
    expected_offset: Optional[int] = None


class ChunkOutcomeKind(str, Enum):
    processed = "processed"
    completed = "completed"
    paused = "paused"
    cancelled = "cancelled"
    failed = "failed"
    skipped = "skipped"
    halted = "halted"


class ChunkOutcome(BaseModel):
    job_id: str
    outcome: ChunkOutcomeKind
    status: Optional[JobStatus] = None
    processed: int = 0
    reason: Optional[str] = None
    continuation_scheduled: bool = False


class WatchdogOutcomeKind(str, Enum):
    healthy = "healthy"
    resumed = "resumed"
    exhausted = "exhausted"
    busy = "busy"
    cooling_down = "cooling_down"


class WatchdogOutcome(BaseModel):
    job_id: str
    outcome: WatchdogOutcomeKind
    attempts: int
    minutes_since_last_activity: Optional[int] = None
