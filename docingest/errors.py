"""
Error taxonomy for the ingestion pipeline.

Every error can carry the id of the processing job it belongs to so that
callers can correlate a failure with the job's log lines.
"""

from typing import Optional


class ProcessingError(Exception):
    """Base exception for document processing failures."""

    retriable = False

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def __str__(self) -> str:
        if self.job_id:
            return f"[{self.job_id}] {self.message}"
        return self.message


class ValidationError(ProcessingError):
    """Raised when a file is rejected before extraction (name, size, type, signature, content)."""
    pass


class ContentRejectedError(ValidationError):
    """Raised when extracted text still looks malicious after sanitization."""
    pass


class ExtractionError(ProcessingError):
    """Raised when a whole document cannot be turned into text."""
    pass


class ChunkingError(ProcessingError):
    """Raised for invalid chunking parameters or unchunkable content."""
    pass


class CapacityError(ProcessingError):
    """Raised when the concurrency ceiling is reached. Safe to retry after a backoff."""

    retriable = True


class ProcessingTimeoutError(ProcessingError):
    """Raised when a step or job deadline is exceeded."""

    def __init__(self, message: str, job_id: Optional[str] = None, step: str = "job"):
        super().__init__(message, job_id=job_id)
        self.step = step


class ExtractionTimeoutError(ExtractionError, ProcessingTimeoutError):
    """Raised when reading or extracting a file exceeds its deadline."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        ProcessingTimeoutError.__init__(self, message, job_id=job_id, step="extraction")
