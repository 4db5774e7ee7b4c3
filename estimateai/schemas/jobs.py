"""
Pydantic schemas for extraction start, retry and job polling.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from estimateai.models.tables import ExtractionJob
from estimateai.schemas.base import CamelModel


class StartExtractionRequest(CamelModel):
    file_ids: Optional[list[uuid.UUID]] = None


class JobSummary(CamelModel):
    id: uuid.UUID
    file_id: uuid.UUID
    status: str
    created_at: datetime
    updated_at: datetime


class StartExtractionResponse(CamelModel):
    jobs: list[JobSummary]


class JobError(CamelModel):
    kind: str
    message: str


class JobDetail(CamelModel):
    job_id: uuid.UUID
    file_id: uuid.UUID
    status: str
    stage: Optional[str] = None
    message: Optional[str] = None
    attempt: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[JobError] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, job: ExtractionJob) -> "JobDetail":
        error = None
        if job.status == "failed":
            error = JobError(kind=job.error_kind or "fatal", message=job.error_message or "")
        return cls(
            job_id=job.id,
            file_id=job.file_id,
            status=job.status,
            stage=job.stage,
            message=job.message,
            attempt=job.attempt,
            result=job.result_json,
            error=error,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )
