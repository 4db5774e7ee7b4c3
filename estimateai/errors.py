"""
Domain errors raised by the job store, orchestrator and comparison engine.
The API layer maps them onto HTTP status codes.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base error carrying a stable machine-readable code."""

    error_code = "ERR_ORCHESTRATOR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class NotFoundError(OrchestratorError):
    error_code = "ERR_NOT_FOUND"


class JobNotFoundError(NotFoundError):
    error_code = "ERR_JOB_NOT_FOUND"


class InvariantViolationError(OrchestratorError):
    """An illegal job state transition was requested."""
    error_code = "ERR_INVARIANT"


class ConcurrentRetryError(OrchestratorError):
    """A retry was requested while a job for the file is still active."""
    error_code = "ERR_CONCURRENT_RETRY"


class RetryNotAllowedError(OrchestratorError):
    """The file is not in a state that can be retried."""
    error_code = "ERR_RETRY_NOT_ALLOWED"


class PreconditionUnmetError(OrchestratorError):
    """Drawing extraction was attempted before any schedule codes exist."""
    error_code = "ERR_PRECONDITION_UNMET"


class ComparisonFailedError(OrchestratorError):
    """At least one comparison chunk failed; carries the first chunk error."""
    error_code = "ERR_COMPARISON_FAILED"

    def __init__(self, message: str, run=None):
        self.run = run
        super().__init__(message)
