"""
RQ entry points, used when DISPATCH_MODE=rq.

The API enqueues job ids only; the worker claims the row itself, so a
job enqueued twice is processed once.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from redis import Redis
from rq import Queue

from estimateai.config import settings
from estimateai.observability.logging import job_context

logger = structlog.get_logger(__name__)

_queue: Optional[Queue] = None


def get_queue() -> Queue:
    global _queue
    if _queue is None:
        _queue = Queue(settings.QUEUE_NAME, connection=Redis.from_url(settings.REDIS_URL))
    return _queue


def enqueue_many(job_ids: list[uuid.UUID]) -> list[str]:
    """Dispatcher handed to the orchestrator in rq mode. Returns RQ job ids."""
    queue = get_queue()
    rq_ids = []
    for job_id in job_ids:
        rq_job = queue.enqueue(
            process_extraction_job,
            str(job_id),
            job_timeout=settings.JOB_TIMEOUT_SECONDS,
            result_ttl=86400,
            failure_ttl=7 * 86400,
        )
        rq_ids.append(rq_job.id)
        logger.info("extraction_enqueued", job_id=str(job_id), rq_job_id=rq_job.id)
    return rq_ids


def process_extraction_job(job_id: str) -> dict:
    """Drive one extraction job to a terminal state inside the RQ worker."""
    with job_context(job_id, worker="rq"):
        outcome = asyncio.run(_process(uuid.UUID(job_id)))
        logger.info("extraction_job_returned", **outcome)
        return outcome


async def _process(job_id: uuid.UUID) -> dict:
    from estimateai.dependencies import build_model_client
    from estimateai.models.database import close_db
    from estimateai.pipeline.orchestrator import ExtractionOrchestrator

    orchestrator = ExtractionOrchestrator(build_model_client(), dispatcher=enqueue_many)
    try:
        job = await orchestrator.process(job_id)
    finally:
        # Pooled connections are bound to this asyncio.run() loop.
        await close_db()
    if job is None:
        return {"status": "skipped"}
    return {"status": job.status, "error_kind": job.error_kind}
