"""
Error taxonomy for the archival pipeline.

Every error carries a short machine-readable ``code`` and the ``stage`` in
which it happened so that job failures can be recorded on the queue with a
message an operator can act on.
"""

from typing import Optional


class UnveilError(Exception):
    """Base class for all archiver errors."""

    code = "UNVEIL_ERROR"

    def __init__(self, message: str, stage: Optional[str] = None, original: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.original = original

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.code}@{self.stage}] {self.message}"
        return f"[{self.code}] {self.message}"


# Queue errors

class DuplicateJobError(UnveilError):
    """The URL is already present in the queue (any status)."""

    code = "DUPLICATE"

    def __init__(self, url: str):
        super().__init__(f"URL already queued: {url}", stage="submit")
        self.url = url


class ClaimConflictError(UnveilError):
    """Another worker claimed the selected job first; the caller should retry."""

    code = "CLAIM_CONFLICT"


class QueueFaultError(UnveilError):
    """A queue operation could not complete within its retry budget."""

    code = "QUEUE_FAULT"


class JobNotFoundError(UnveilError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: int):
        super().__init__(f"No job with id {job_id}", stage="lookup")
        self.job_id = job_id


class AlreadyTerminalError(UnveilError):
    """A terminal transition was attempted on a completed/failed job."""

    code = "ALREADY_TERMINAL"

    def __init__(self, job_id: int, status: str):
        super().__init__(f"Job {job_id} is already {status}", stage="transition")
        self.job_id = job_id
        self.status = status


class UnclaimedJobError(UnveilError):
    """A terminal transition was attempted on a job no worker has claimed."""

    code = "NOT_CLAIMED"

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} is pending; claim it before completing or failing it",
                         stage="transition")
        self.job_id = job_id


# Pipeline errors

class NavigationError(UnveilError):
    """The page failed to load. Job-level failure."""

    code = "NAVIGATION_FAILURE"


class StageError(UnveilError):
    """A dismissal/sanitization stage failed. Logged; the pipeline continues."""

    code = "STAGE_FAILURE"


class FrameTimeoutError(UnveilError):
    """A frame exceeded its sweep budget. That frame is skipped."""

    code = "FRAME_TIMEOUT"


class CaptureError(UnveilError):
    """Writing an artifact (HTML/screenshot/PDF/meta) failed. Job-level failure."""

    code = "CAPTURE_FAILURE"
