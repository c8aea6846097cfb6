"""
Job-level errors.
"""


class TransientFailure(Exception):
    """An unexpected failure inside a pipeline stage. Retried by the orchestrator."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {type(cause).__name__}: {cause}")


class JobCancelled(Exception):
    """Cancellation was observed at a stage boundary."""


class NotReady(Exception):
    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is {status}, result not available")


class JobNotFound(KeyError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(job_id)

    def __str__(self):
        return f"Unknown job {self.job_id}"
