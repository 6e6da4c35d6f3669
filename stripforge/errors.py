"""Error taxonomy for the orchestrator and its collaborators.

Item-level failures are recorded as data on the job, not raised. The
exceptions below either reject input before any state exists, describe a
collaborator failure that the orchestrator converts into item state, or
signal a structural problem that must reach the caller.
"""

from typing import Optional


class StripforgeError(Exception):
    """Base class for all service errors."""


class ValidationError(StripforgeError):
    """Bad input to start_job. Raised before any state is created."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SubmissionError(StripforgeError):
    """A call to start external work failed.

    `transient` marks network-class failures worth retrying.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class CallbackError(StripforgeError):
    """Malformed or unattributable webhook payload."""


class ImageCompositionError(StripforgeError):
    """Composition of a single panel or strip failed."""


class ImageFetchError(ImageCompositionError):
    """An image source was unreachable or returned an error."""


class ImageDecodeError(ImageCompositionError):
    """An image source held bytes that could not be decoded."""


class JobFailed(StripforgeError):
    """A job reached the terminal failed state."""

    def __init__(self, job_id: str, reason: str):
        super().__init__(f"Job {job_id} failed: {reason}")
        self.job_id = job_id
        self.reason = reason


class JobNotFound(StripforgeError):
    """No job record exists for the requested id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class StateStoreError(StripforgeError):
    """Job state could not be read or written."""


class InvalidTransition(StripforgeError):
    """A job status change that would move backwards or leave a terminal state."""
