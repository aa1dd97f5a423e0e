"""
Stuck-job watchdog.

Looks at running jobs, and at started jobs still waiting for their first
chunk, from the outside. A job whose last activity is older than the stall
threshold gets a forced resume, up to a bounded number of automatic attempts;
after that it is left for a human. Only one resume per job can be in flight,
enforced by a compare-and-swap on the job's `resuming_since` mark. A mark
older than the resume lease counts as released.
"""
from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging

from .config import settings
from .errors import AnnotationServiceError
from .orchestrator import JobOrchestrator
from .storage import utc_now
from ..schemas.job import STALLABLE_STATUSES, Job, WatchdogOutcome, WatchdogOutcomeKind

logger = logging.getLogger(__name__)


class StuckJobWatchdog:
    def __init__(
        self,
        orchestrator: JobOrchestrator,
        clock: Optional[Callable[[], datetime]] = None,
        stall_threshold_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
        resume_lease_seconds: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.storage = orchestrator.storage
        self.clock = clock or orchestrator.clock or utc_now
        self.stall_threshold_seconds = stall_threshold_seconds or orchestrator.stall_threshold_seconds
        self.max_attempts = orchestrator.max_auto_resume_attempts if max_attempts is None else max_attempts
        self.cooldown_seconds = (
            settings.WATCHDOG_RESUME_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )
        self.resume_lease_seconds = (
            settings.WATCHDOG_RESUME_LEASE_SECONDS if resume_lease_seconds is None else resume_lease_seconds
        )

    def _idle_seconds(self, job: Job, now: datetime) -> Optional[float]:
        if job.last_activity_at is None:
            return None
        return (now - job.last_activity_at).total_seconds()

    def is_stuck(self, job: Job, now: Optional[datetime] = None) -> bool:
        idle = self._idle_seconds(job, now or self.clock())
        return job.status in STALLABLE_STATUSES and idle is not None and idle >= self.stall_threshold_seconds

    def check(self, job: Job) -> WatchdogOutcome:
        now = self.clock()
        idle = self._idle_seconds(job, now)
        minutes = round(idle / 60) if idle is not None else None

        def outcome(kind: WatchdogOutcomeKind, attempts: int = job.auto_resume_attempts) -> WatchdogOutcome:
            return WatchdogOutcome(job_id=job.id, outcome=kind, attempts=attempts,
                                   minutes_since_last_activity=minutes)

        if not self.is_stuck(job, now):
            return outcome(WatchdogOutcomeKind.healthy)

        if job.auto_resume_attempts >= self.max_attempts:
            logger.error(
                "Job %s stuck for %s min after %d auto-resumes, needs manual attention",
                job.id, minutes, job.auto_resume_attempts,
            )
            return outcome(WatchdogOutcomeKind.exhausted)

        if job.last_auto_resume_at is not None:
            since_resume = (now - job.last_auto_resume_at).total_seconds()
            if since_resume < self.cooldown_seconds:
                return outcome(WatchdogOutcomeKind.cooling_down)

        stale_before = now - timedelta(seconds=self.resume_lease_seconds)
        if not self.storage.try_begin_resume(job.id, now, stale_before):
            return outcome(WatchdogOutcomeKind.busy)

        try:
            resumed = self.orchestrator.force_resume(job.id, automatic=True)
        except AnnotationServiceError as e:
            logger.warning("Auto-resume of job %s skipped: %s", job.id, e)
            return outcome(WatchdogOutcomeKind.busy)
        finally:
            self.storage.end_resume(job.id)

        logger.warning(
            "Job %s stuck for %s min, auto-resume %d/%d triggered",
            job.id, minutes, resumed.auto_resume_attempts, self.max_attempts,
        )
        return outcome(WatchdogOutcomeKind.resumed, resumed.auto_resume_attempts)

    def sweep(self) -> List[WatchdogOutcome]:
        """Check every running or queued job once"""
        outcomes = []
        for job in self.storage.list_jobs(STALLABLE_STATUSES, limit=10000):
            outcomes.append(self.check(job))
        resumed = sum(1 for o in outcomes if o.outcome == WatchdogOutcomeKind.resumed)
        if resumed:
            logger.info("Watchdog sweep resumed %d of %d active jobs", resumed, len(outcomes))
        return outcomes


_watchdog: Optional[StuckJobWatchdog] = None


def get_watchdog() -> StuckJobWatchdog:
    global _watchdog
    if _watchdog is None:
        from .orchestrator import get_orchestrator
        _watchdog = StuckJobWatchdog(get_orchestrator())
    return _watchdog
