"""
Mapping from domain errors to HTTP errors.
"""

from fastapi import HTTPException, status

from estimateai.errors import (
    ComparisonFailedError,
    ConcurrentRetryError,
    InvariantViolationError,
    NotFoundError,
    OrchestratorError,
    PreconditionUnmetError,
    RetryNotAllowedError,
)

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrentRetryError, status.HTTP_409_CONFLICT),
    (InvariantViolationError, status.HTTP_409_CONFLICT),
    (RetryNotAllowedError, status.HTTP_400_BAD_REQUEST),
    (PreconditionUnmetError, status.HTTP_400_BAD_REQUEST),
    (ComparisonFailedError, status.HTTP_502_BAD_GATEWAY),
)


def http_error(error: OrchestratorError) -> HTTPException:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=code, detail=error.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)
