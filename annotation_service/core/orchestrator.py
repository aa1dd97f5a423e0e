"""
Job orchestrator: lifecycle, chunk processing and self-continuation.

A job is processed one fixed-size chunk per invocation. Each invocation
re-reads the job, takes a per-job lease with a compare-and-swap, processes the
chunk from the persisted cursor, commits counters and cursor under the lease
and then hands the job to a continuation scheduler if work remains. Pause and
cancel requests on a running job are observed when the chunk commits.
"""
from datetime import datetime, timedelta
from typing import Callable, List, NamedTuple, Optional, Sequence, Union
import uuid
import logging

from .config import settings
from .continuation import ContinuationScheduler
from .errors import ChunkConflictError, InvalidTransitionError, JobNotFoundError, WorkSetError
from .kill_switch import EmergencyKillSwitch
from .storage import AnnotationStorage, utc_now
from ..engine.pipeline import AnnotationPipeline, assign_domains
from ..engine.semantic import SemanticClassifier
from ..engine.tokenizer import tokenize
from ..schemas.annotation import AnnotatedToken, WordToClassify
from ..schemas.job import (
    ACTIVE_STATUSES, ChunkOutcome, ChunkOutcomeKind, Cursor, DocumentInput, Job, JobKind,
    JobProgress, JobStatus, ReclassificationCriteria, ReclassificationStats, RequestedAction,
    STALLABLE_STATUSES,
)
from ..utils.chunking import flatten, plan_document_window

logger = logging.getLogger(__name__)

COMMIT_ATTEMPTS = 3
RESUME_REWIND_MARGIN_SECONDS = 120


class ChunkResult(NamedTuple):
    processed: int
    new: int
    cached: int
    cursor: Cursor
    exhausted: bool


def format_eta(seconds: float) -> str:
    if seconds < 60:
        return f"~{round(seconds)}s"
    if seconds < 3600:
        return f"~{round(seconds / 60)}min"
    hours = int(seconds // 3600)
    minutes = round((seconds % 3600) / 60)
    return f"~{hours}h {minutes}min"


def compute_progress(
    job: Job,
    now: datetime,
    stall_threshold_seconds: int,
    max_auto_resume_attempts: int,
) -> JobProgress:
    """Derived progress view; throughput and ETA are recomputed on every call"""
    if job.total_units:
        percent = round(min(100.0, job.processed_units / job.total_units * 100), 2)
    else:
        percent = 100.0 if job.status == JobStatus.completed else 0.0

    units_per_second = eta_seconds = None
    eta = None
    if job.started_at is not None and job.processed_units >= 1:
        until = job.finished_at or now
        elapsed = (until - job.started_at).total_seconds()
        if elapsed >= 1:
            units_per_second = job.processed_units / elapsed
            if not job.is_terminal:
                eta_seconds = job.remaining_units / units_per_second
                eta = format_eta(eta_seconds)

    minutes_since = None
    idle_seconds = None
    if job.last_activity_at is not None:
        idle_seconds = (now - job.last_activity_at).total_seconds()
        minutes_since = max(0, round(idle_seconds / 60))

    is_stuck = (
        job.status in STALLABLE_STATUSES
        and idle_seconds is not None
        and idle_seconds >= stall_threshold_seconds
    )
    needs_attention = (
        (is_stuck and job.auto_resume_attempts >= max_auto_resume_attempts)
        or job.status == JobStatus.failed
    )

    return JobProgress(
        job_id=job.id,
        status=job.status,
        percent=percent,
        units_per_second=units_per_second,
        eta_seconds=eta_seconds,
        eta=eta,
        minutes_since_last_activity=minutes_since,
        is_stuck=is_stuck,
        needs_attention=needs_attention,
    )


class JobOrchestrator:
    def __init__(
        self,
        storage: AnnotationStorage,
        pipeline: AnnotationPipeline,
        classifier: SemanticClassifier,
        scheduler: ContinuationScheduler,
        kill_switch: Optional[EmergencyKillSwitch] = None,
        clock: Callable[[], datetime] = utc_now,
        stall_threshold_seconds: Optional[int] = None,
        max_auto_resume_attempts: Optional[int] = None,
    ):
        self.storage = storage
        self.pipeline = pipeline
        self.classifier = classifier
        self.scheduler = scheduler
        self.kill_switch = kill_switch
        self.clock = clock
        self.stall_threshold_seconds = stall_threshold_seconds or settings.STALL_THRESHOLD_SECONDS
        self.max_auto_resume_attempts = (
            settings.MAX_AUTO_RESUME_ATTEMPTS if max_auto_resume_attempts is None else max_auto_resume_attempts
        )

    # ---- creation ----

    def _chunk_size(self, chunk_size: Optional[int]) -> int:
        size = chunk_size or settings.JOB_CHUNK_SIZE
        if size < 1 or size > settings.MAX_CHUNK_SIZE:
            raise WorkSetError(f"Chunk size must be between 1 and {settings.MAX_CHUNK_SIZE}")
        return size

    def _new_job(self, kind: JobKind, total: int, chunk_size: int,
                 collection_id: Optional[str], params: dict) -> Job:
        return Job(
            id=str(uuid.uuid4()),
            kind=kind,
            status=JobStatus.queued,
            collection_id=collection_id,
            params=params,
            total_units=total,
            chunk_size=chunk_size,
            created_at=self.clock(),
        )

    def create_document_job(
        self,
        collection_id: str,
        documents: Sequence[Union[DocumentInput, dict]],
        chunk_size: Optional[int] = None,
    ) -> Job:
        """Store a collection's documents as a job's work set; one unit per token"""
        size = self._chunk_size(chunk_size)
        docs = []
        for doc in documents:
            if isinstance(doc, dict):
                doc = DocumentInput(**doc)
            docs.append({
                "id": doc.id,
                "title": doc.title,
                "text": doc.text,
                "token_count": len(tokenize(doc.text)),
            })

        total = sum(d["token_count"] for d in docs)
        job = self._new_job(JobKind.document_annotation, total, size, collection_id, {"documents": len(docs)})
        self.storage.create_job(job)
        self.storage.save_job_documents(job.id, docs)
        logger.info("Created annotation job %s: %d documents, %d tokens", job.id, len(docs), total)
        return job

    def _find_candidates(self, criteria: ReclassificationCriteria) -> List[dict]:
        return self.storage.find_reclassification_candidates(
            include_unclassified=criteria.include_unclassified,
            include_low_confidence=criteria.include_low_confidence,
            confidence_threshold=self._threshold(criteria),
            sentinel_code=self.classifier.taxonomy.sentinel,
            collection_id=criteria.collection_id,
        )

    @staticmethod
    def _threshold(criteria: ReclassificationCriteria) -> float:
        if criteria.confidence_threshold is None:
            return settings.RECLASSIFY_CONFIDENCE_THRESHOLD
        return criteria.confidence_threshold

    def analyze_reclassification(self, criteria: ReclassificationCriteria) -> ReclassificationStats:
        candidates = self._find_candidates(criteria)
        threshold = self._threshold(criteria)
        return ReclassificationStats(
            total=len(candidates),
            unclassified=sum(1 for c in candidates if c["domain_code"] == self.classifier.taxonomy.sentinel),
            low_confidence=sum(1 for c in candidates if c["confidence"] < threshold),
        )

    def create_reclassification_job(self, criteria: ReclassificationCriteria,
                                    chunk_size: Optional[int] = None) -> Job:
        """Snapshot the words to reclassify so chunks range-scan a fixed work set"""
        size = self._chunk_size(chunk_size)
        candidates = self._find_candidates(criteria)
        job = self._new_job(JobKind.reclassification, len(candidates), size,
                            criteria.collection_id, criteria.model_dump())
        self.storage.create_job(job)
        self.storage.save_work_items(job.id, [
            {"word": c["word"], "lemma": c["lemma"], "pos": c["pos"], "previous_code": c["domain_code"]}
            for c in candidates
        ])
        logger.info("Created reclassification job %s for %d words", job.id, len(candidates))
        return job

    # ---- reads ----

    def get_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, statuses: Optional[Sequence[JobStatus]] = None, limit: int = 100) -> List[Job]:
        return self.storage.list_jobs(statuses, limit)

    def get_progress(self, job_id: str) -> JobProgress:
        return self.progress_for(self.get_job(job_id))

    def progress_for(self, job: Job) -> JobProgress:
        return compute_progress(job, self.clock(), self.stall_threshold_seconds, self.max_auto_resume_attempts)

    def get_results(self, job_id: str, document_index: Optional[int] = None) -> List[AnnotatedToken]:
        self.get_job(job_id)
        return self.storage.get_annotated_tokens(job_id, document_index)

    # ---- continuation ----

    def _schedule(self, job_id: str, expected_offset: Optional[int]) -> bool:
        scheduled = self.scheduler.schedule(job_id, expected_offset)
        if not scheduled:
            logger.warning("No continuation scheduled for job %s; the watchdog will pick it up", job_id)
        return scheduled

    def start(self, job_id: str) -> bool:
        """
        Trigger the first chunk. The start is stamped as activity so a lost
        first continuation shows up as a stalled queued job.
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.queued:
            raise InvalidTransitionError(job_id, job.status.value, "start")
        if not self.storage.update_job(job_id, {"last_activity_at": self.clock()},
                                       expected={"status": JobStatus.queued}):
            raise ChunkConflictError(f"job {job_id} changed while starting")
        return self._schedule(job_id, job.cursor.offset)

    def process_next_chunk(self, job_id: str, expected_offset: Optional[int] = None) -> ChunkOutcome:
        """
        Continuation entrypoint. Safe to call repeatedly and concurrently: stale,
        duplicate and late invocations return without doing any work.
        """
        if self.kill_switch is not None and self.kill_switch.is_active():
            logger.warning("Kill switch active, not processing job %s", job_id)
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.halted, reason="kill switch active")

        job = self.get_job(job_id)
        if job.status not in (JobStatus.queued, JobStatus.running):
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.skipped, status=job.status,
                                reason=f"job is {job.status.value}")
        if expected_offset is not None and expected_offset != job.cursor.offset:
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.skipped, status=job.status,
                                reason="stale continuation")

        token = uuid.uuid4().hex
        now = self.clock()
        claimed = self.storage.claim_job(
            job_id, token, now, now - timedelta(seconds=self.stall_threshold_seconds)
        )
        if claimed is None:
            logger.info("Job %s is already being processed, skipping", job_id)
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.skipped, status=job.status,
                                reason="chunk already in progress")

        if expected_offset is not None and claimed.cursor.offset != expected_offset:
            self.storage.update_job(job_id, {"claim_token": None}, expected={"claim_token": token})
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.skipped, status=claimed.status,
                                reason="stale continuation")

        try:
            if claimed.kind == JobKind.document_annotation:
                result = self._process_document_chunk(claimed)
            else:
                result = self._process_reclassification_chunk(claimed)
            committed = self._commit(claimed, token, result)
        except ChunkConflictError as e:
            logger.warning("Job %s: %s", job_id, e)
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.skipped, reason=str(e))
        except Exception as e:
            logger.exception("Chunk failed for job %s at offset %d", job_id, claimed.cursor.offset)
            self._fail(job_id, token, str(e) or e.__class__.__name__)
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.failed, status=JobStatus.failed,
                                processed=claimed.processed_units, reason=str(e))

        logger.info(
            "Job %s chunk %d: %d/%d units (%s)",
            job_id, committed.chunks_processed, committed.processed_units,
            committed.total_units, committed.status.value,
        )

        if committed.status == JobStatus.running:
            scheduled = self._schedule(job_id, committed.cursor.offset)
            return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind.processed, status=committed.status,
                                processed=committed.processed_units, continuation_scheduled=scheduled)

        return ChunkOutcome(job_id=job_id, outcome=ChunkOutcomeKind(committed.status.value),
                            status=committed.status, processed=committed.processed_units)

    def _process_document_chunk(self, job: Job) -> ChunkResult:
        lengths = self.storage.list_document_lengths(job.id)
        if len(lengths) != job.params.get("documents", len(lengths)):
            raise WorkSetError(f"Job {job.id} is missing documents")

        slices, next_doc, next_word = plan_document_window(
            lengths, job.cursor.document, job.cursor.word, job.chunk_size
        )

        annotated_slices = []
        for doc_index, start, end in slices:
            doc = self.storage.get_job_document(job.id, doc_index)
            if doc is None:
                raise WorkSetError(f"Document {doc_index} of job {job.id} not found")
            tokens = tokenize(doc["text"])
            if len(tokens) != doc["token_count"]:
                raise WorkSetError(f"Document {doc_index} of job {job.id} no longer matches its token count")
            annotated_slices.append((doc_index, self.pipeline.annotate_window(tokens, start, end, doc["text"])))

        flat = flatten(tokens for _, tokens in annotated_slices)
        classified, new_units, cached_units = assign_domains(flat, self.storage, self.classifier, job.collection_id)

        i = 0
        for doc_index, tokens in annotated_slices:
            self.storage.save_annotated_tokens(job.id, doc_index, classified[i:i + len(tokens)])
            i += len(tokens)

        processed = len(flat)
        return ChunkResult(
            processed=processed,
            new=new_units,
            cached=cached_units,
            cursor=Cursor(offset=job.cursor.offset + processed, document=next_doc, word=next_word),
            exhausted=next_doc >= len(lengths),
        )

    def _process_reclassification_chunk(self, job: Job) -> ChunkResult:
        items = self.storage.get_work_items(job.id, job.cursor.offset, job.chunk_size)
        if items:
            words = [WordToClassify(word=item["word"], lemma=item["lemma"], pos=item["pos"]) for item in items]
            self.storage.delete_classifications([w.word for w in words])
            results = self.classifier.classify_all(words)
        else:
            results = []

        improved = unchanged = 0
        for item, result in zip(items, results):
            self.storage.insert_classification(result, job.collection_id)
            if result.domain_code != item["previous_code"]:
                improved += 1
            else:
                unchanged += 1

        offset = job.cursor.offset + len(items)
        return ChunkResult(
            processed=len(items),
            new=improved,
            cached=unchanged,
            cursor=Cursor(offset=offset),
            exhausted=len(items) < job.chunk_size or offset >= job.total_units,
        )

    def _commit(self, job: Job, token: str, result: ChunkResult) -> Job:
        for _ in range(COMMIT_ATTEMPTS):
            current = self.get_job(job.id)
            if current.claim_token != token:
                raise ChunkConflictError(f"lease lost before committing offset {job.cursor.offset}")

            now = self.clock()
            processed = current.processed_units + result.processed
            changes = {
                "processed_units": processed,
                "new_units": current.new_units + result.new,
                "cached_units": current.cached_units + result.cached,
                "chunks_processed": current.chunks_processed + 1,
                "cursor": result.cursor,
                "last_activity_at": now,
                "claim_token": None,
                "requested_action": None,
            }

            if processed >= current.total_units or result.exhausted:
                changes.update(status=JobStatus.completed, finished_at=now)
            elif current.requested_action == RequestedAction.cancel:
                changes.update(status=JobStatus.cancelled, finished_at=now)
            elif current.requested_action == RequestedAction.pause:
                changes.update(status=JobStatus.paused)
            else:
                changes.update(status=JobStatus.running)

            guard = {
                "claim_token": token,
                "status": current.status,
                "requested_action": current.requested_action,
            }
            if self.storage.update_job(job.id, changes, expected=guard):
                return self.get_job(job.id)

        raise ChunkConflictError(f"job kept changing while committing offset {job.cursor.offset}")

    def _fail(self, job_id: str, token: str, message: str) -> None:
        now = self.clock()
        try:
            self.storage.update_job(
                job_id,
                {
                    "status": JobStatus.failed,
                    "error_message": message,
                    "claim_token": None,
                    "requested_action": None,
                    "last_activity_at": now,
                    "finished_at": now,
                },
                expected={"claim_token": token},
            )
        except Exception:
            logger.exception("Could not record failure of job %s", job_id)

    # ---- control ----

    def _is_idle(self, job: Job, now: datetime) -> bool:
        """A running job with no activity for the stall threshold has no live invocation"""
        if job.last_activity_at is None:
            return True
        return (now - job.last_activity_at).total_seconds() >= self.stall_threshold_seconds

    def _request_stop(self, job_id: str, action: RequestedAction, immediate_only: bool = False) -> Job:
        target = JobStatus.cancelled if action == RequestedAction.cancel else JobStatus.paused

        for _ in range(COMMIT_ATTEMPTS):
            job = self.get_job(job_id)
            now = self.clock()

            if job.is_terminal:
                raise InvalidTransitionError(job_id, job.status.value, action.value)
            if job.status == target:
                return job
            if action == RequestedAction.pause and job.requested_action == RequestedAction.cancel:
                return job

            immediate = (
                immediate_only
                or job.status in (JobStatus.queued, JobStatus.paused)
                or self._is_idle(job, now)
            )
            if immediate:
                changes = {"status": target, "requested_action": None, "claim_token": None}
                if target == JobStatus.cancelled:
                    changes["finished_at"] = now
                guard = {"status": job.status, "last_activity_at": job.last_activity_at}
            else:
                changes = {"requested_action": action}
                guard = {"status": JobStatus.running}

            if self.storage.update_job(job_id, changes, expected=guard):
                logger.info("Job %s: %s %s", job_id, action.value, "applied" if immediate else "requested")
                return self.get_job(job_id)

        raise ChunkConflictError(f"job {job_id} kept changing while requesting {action.value}")

    def pause(self, job_id: str) -> Job:
        return self._request_stop(job_id, RequestedAction.pause)

    def cancel(self, job_id: str, immediate: bool = False) -> Job:
        """
        Cancel a job. A running job finishes its current chunk first unless
        `immediate` is set, in which case an in-flight chunk loses its lease
        and its counters are not committed.
        """
        return self._request_stop(job_id, RequestedAction.cancel, immediate_only=immediate)

    def resume(self, job_id: str) -> Job:
        """
        Manual resume. A paused job continues from its persisted cursor; a
        running job with a pending pause request simply drops the request.
        Resets the auto-resume counter either way.
        """
        job = self.get_job(job_id)

        if job.status == JobStatus.running and job.requested_action == RequestedAction.pause:
            if not self.storage.update_job(
                job_id, {"requested_action": None, "auto_resume_attempts": 0},
                expected={"status": JobStatus.running, "requested_action": RequestedAction.pause},
            ):
                raise ChunkConflictError(f"job {job_id} changed while resuming")
            return self.get_job(job_id)

        if job.status != JobStatus.paused:
            raise InvalidTransitionError(job_id, job.status.value, "resume")

        changes = {
            "status": JobStatus.running,
            "requested_action": None,
            "claim_token": None,
            "error_message": None,
            "auto_resume_attempts": 0,
            "resuming_since": None,
            "last_activity_at": self.clock(),
        }
        if not self.storage.update_job(job_id, changes, expected={"status": JobStatus.paused}):
            raise ChunkConflictError(f"job {job_id} changed while resuming")

        logger.info("Job %s resumed at offset %d", job_id, job.cursor.offset)
        self._schedule(job_id, job.cursor.offset)
        return self.get_job(job_id)

    def force_resume(self, job_id: str, automatic: bool = False) -> Job:
        """
        Re-trigger a job whose continuation was lost: a running job, or a
        queued one that was started but never claimed. Last activity is
        rewound past the stall threshold so the next claim takes over any
        abandoned lease. Automatic resumes count against the attempt limit;
        manual ones reset it and clear any leftover resume mark.
        """
        job = self.get_job(job_id)
        started = job.status == JobStatus.queued and job.last_activity_at is not None
        if job.status != JobStatus.running and not started:
            raise InvalidTransitionError(job_id, job.status.value, "force-resume")

        now = self.clock()
        rewound = now - timedelta(seconds=self.stall_threshold_seconds + RESUME_REWIND_MARGIN_SECONDS)
        changes = {"last_activity_at": rewound}
        if automatic:
            changes["auto_resume_attempts"] = job.auto_resume_attempts + 1
            changes["last_auto_resume_at"] = now
        else:
            changes["auto_resume_attempts"] = 0
            changes["resuming_since"] = None

        guard = {"status": job.status, "auto_resume_attempts": job.auto_resume_attempts}
        if not self.storage.update_job(job_id, changes, expected=guard):
            raise ChunkConflictError(f"job {job_id} changed while force-resuming")

        logger.warning(
            "Job %s force-resumed (%s) at offset %d",
            job_id, "automatic" if automatic else "manual", job.cursor.offset,
        )
        self._schedule(job_id, None)
        return self.get_job(job_id)

    def emergency_stop(self, reason: Optional[str] = None) -> List[Job]:
        """Raise the kill switch and cancel every active job"""
        if self.kill_switch is not None:
            self.kill_switch.activate(reason)

        cancelled = []
        for job in self.storage.list_jobs(ACTIVE_STATUSES, limit=10000):
            try:
                cancelled.append(self.cancel(job.id, immediate=True))
            except (InvalidTransitionError, ChunkConflictError) as e:
                logger.warning("Could not cancel job %s during emergency stop: %s", job.id, e)
        return cancelled


_orchestrator: Optional[JobOrchestrator] = None


def build_orchestrator(storage: Optional[AnnotationStorage] = None, scheduler: Optional[ContinuationScheduler] = None) -> JobOrchestrator:
    from .continuation import build_scheduler
    from .kill_switch import get_kill_switch
    from .storage import get_storage
    from ..engine.cache import AnnotationCache
    from ..engine.external import ExternalAnnotator

    storage = storage or get_storage()
    cache = AnnotationCache(storage)
    pipeline = AnnotationPipeline(cache, external=ExternalAnnotator())
    return JobOrchestrator(
        storage=storage,
        pipeline=pipeline,
        classifier=SemanticClassifier(),
        scheduler=scheduler or build_scheduler(),
        kill_switch=get_kill_switch(),
    )


def get_orchestrator() -> JobOrchestrator:
    """
    Get or initialize the shared orchestrator.
    """
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator
