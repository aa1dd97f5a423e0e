"""
Errors raised by the orchestration layer.

Annotation layers never raise these: external and classifier failures are
converted into degraded results where they happen.
"""


class AnnotationServiceError(Exception):
    """Base class for service errors"""


class JobNotFoundError(AnnotationServiceError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(AnnotationServiceError):
    def __init__(self, job_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} job {job_id} while it is {status}")
        self.job_id = job_id
        self.status = status
        self.action = action


class ChunkConflictError(AnnotationServiceError):
    """Another invocation took over the job while a chunk was being committed"""


class WorkSetError(AnnotationServiceError):
    """The work set of a job is missing or inconsistent with its cursor"""
