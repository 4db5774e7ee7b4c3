"""
Extraction endpoints.
Start a batch, retry a single file, and poll a job.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from estimateai.api.errors import http_error
from estimateai.dependencies import get_db, get_orchestrator, verify_api_key
from estimateai.errors import OrchestratorError
from estimateai.jobs.store import JobStore
from estimateai.pipeline.orchestrator import ExtractionOrchestrator
from estimateai.schemas.jobs import (
    JobDetail,
    JobSummary,
    StartExtractionRequest,
    StartExtractionResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["extractions"], dependencies=[Depends(verify_api_key)])


def _key(idempotency_key: Optional[str]) -> str:
    # Without a key every call is a fresh submission.
    return idempotency_key.strip() if idempotency_key and idempotency_key.strip() else str(uuid.uuid4())


@router.post(
    "/projects/{project_id}/extractions/start",
    response_model=StartExtractionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_extractions(
    project_id: uuid.UUID,
    body: Optional[StartExtractionRequest] = Body(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
):
    """Submit one job per file (or per listed fileIds)."""
    file_ids = body.file_ids if body else None
    try:
        jobs = await orchestrator.start(project_id, _key(idempotency_key), file_ids)
    except OrchestratorError as e:
        raise http_error(e)
    return StartExtractionResponse(jobs=[JobSummary.model_validate(j) for j in jobs])


@router.post(
    "/projects/{project_id}/files/{file_id}/retry",
    response_model=JobSummary,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_file(
    project_id: uuid.UUID,
    file_id: uuid.UUID,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
):
    """Queue a new job for a failed file. 409 while a job is still active."""
    try:
        job = await orchestrator.retry(project_id, file_id, _key(idempotency_key))
    except OrchestratorError as e:
        raise http_error(e)
    return JobSummary.model_validate(job)


@router.get("/extractions/jobs/{job_id}", response_model=JobDetail, response_model_exclude_none=True)
async def get_job(job_id: uuid.UUID, session: AsyncSession = Depends(get_db)):
    try:
        job = await JobStore(session).get(job_id)
    except OrchestratorError as e:
        raise http_error(e)
    return JobDetail.from_row(job)
