"""
Server-sent events progress stream.
Emits `project-update` with the full {files, items, logs} snapshot whenever
it changes and a heartbeat comment otherwise.
"""

import json
import uuid
from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from estimateai.config import settings
from estimateai.dependencies import get_progress_publisher, verify_api_key
from estimateai.models.database import async_session_factory
from estimateai.models.tables import Project
from estimateai.schemas.projects import ProjectSnapshot
from estimateai.streaming.publisher import ProgressPublisher
from estimateai.streaming.snapshot import build_snapshot, snapshot_fingerprint

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["stream"], dependencies=[Depends(verify_api_key)])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def snapshot_event(snapshot: ProjectSnapshot) -> str:
    return sse_event("project-update", snapshot.model_dump(mode="json", by_alias=True))


async def project_events(
    request: Request,
    project_id: uuid.UUID,
    publisher: ProgressPublisher,
    poll_seconds: Optional[float] = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames until the client disconnects.

    In-process updates arrive through the publisher; the poll interval
    picks up changes written by workers in other processes.
    """
    poll_seconds = poll_seconds or settings.STREAM_POLL_SECONDS
    subscription = publisher.subscribe(project_id)
    last_fingerprint = None
    try:
        async with async_session_factory() as session:
            snapshot = await build_snapshot(session, project_id)
        last_fingerprint = snapshot_fingerprint(snapshot)
        yield snapshot_event(snapshot)

        while not await request.is_disconnected():
            snapshot = await subscription.next(timeout=poll_seconds)
            if snapshot is None:
                async with async_session_factory() as session:
                    snapshot = await build_snapshot(session, project_id)
            fingerprint = snapshot_fingerprint(snapshot)
            if fingerprint == last_fingerprint:
                yield ": heartbeat\n\n"
                continue
            last_fingerprint = fingerprint
            yield snapshot_event(snapshot)
    except Exception as e:
        logger.error("stream_failed", project_id=str(project_id), error=str(e))
        yield sse_event("error", {"message": "Stream error"})
    finally:
        publisher.unsubscribe(subscription)


@router.get("/projects/{project_id}/stream")
async def stream_project(
    project_id: uuid.UUID,
    request: Request,
    publisher: ProgressPublisher = Depends(get_progress_publisher),
):
    async with async_session_factory() as session:
        if await session.get(Project, project_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return StreamingResponse(
        project_events(request, project_id, publisher),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
