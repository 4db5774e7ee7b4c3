"""
Comparison endpoint.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends

from estimateai.api.errors import http_error
from estimateai.dependencies import get_comparison_engine, verify_api_key
from estimateai.errors import OrchestratorError
from estimateai.pipeline.comparison import ComparisonEngine
from estimateai.schemas.comparisons import (
    CompareRequest,
    CompareResponse,
    ComparisonResultOut,
    ComparisonStats,
)

router = APIRouter(tags=["comparisons"], dependencies=[Depends(verify_api_key)])


@router.post("/projects/{project_id}/compare", response_model=CompareResponse)
async def compare_project(
    project_id: uuid.UUID,
    body: Optional[CompareRequest] = Body(None),
    engine: ComparisonEngine = Depends(get_comparison_engine),
):
    """Compare BOQ against drawing/schedule detail. Cached per input fingerprint."""
    force = body.force if body else False
    try:
        outcome = await engine.compare(project_id, force=force)
    except OrchestratorError as e:
        raise http_error(e)
    return CompareResponse(
        results=[ComparisonResultOut(**r) for r in outcome.results],
        stats=ComparisonStats.model_validate(outcome.stats),
        cached=outcome.cached,
    )
