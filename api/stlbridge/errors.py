"""Exception hierarchy for the STL import pipeline."""
from __future__ import annotations
from typing import Optional

class ImportPipelineError(Exception):
    """Base exception for all pipeline errors."""

class ValidationError(ImportPipelineError):
    """Untrusted origin or malformed request payload."""

class TransportError(ImportPipelineError):
    """Remote fetch or server round trip failed or timed out."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

class DecodeError(ImportPipelineError):
    """Payload is not valid STL geometry."""

class InternalConsistencyError(ImportPipelineError):
    """An illegal job state transition was attempted."""

    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal transition for job {job_id}: {current} -> {requested}")

class JobNotFoundError(ImportPipelineError):
    """No job is registered under the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job not found: {job_id}")

class PersistenceError(ImportPipelineError):
    """Writing a job snapshot to the backing store failed."""
