"""
In-process asyncio worker pool.
Used when DISPATCH_MODE=inline: polls for queued jobs and runs up to
WORKER_CONCURRENCY of them at once through the orchestrator.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from estimateai.config import settings
from estimateai.jobs.store import JobStore
from estimateai.models.database import async_session_factory
from estimateai.observability.logging import job_context
from estimateai.observability.metrics import worker_jobs_active
from estimateai.pipeline.orchestrator import ExtractionOrchestrator

logger = structlog.get_logger(__name__)


class ExtractionWorkerPool:
    def __init__(
        self,
        orchestrator: ExtractionOrchestrator,
        concurrency: Optional[int] = None,
        poll_seconds: Optional[float] = None,
        session_factory: async_sessionmaker = async_session_factory,
    ):
        self.orchestrator = orchestrator
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_seconds = poll_seconds or settings.WORKER_POLL_SECONDS
        self.session_factory = session_factory
        self._inflight: dict[uuid.UUID, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    def wake(self, job_ids: Optional[list[uuid.UUID]] = None) -> None:
        """Dispatcher hook: new jobs exist, skip the rest of the poll interval."""
        self._wakeup.set()

    async def _queued(self, limit: int) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            return await JobStore(session).queued_job_ids(limit)

    async def _run_one(self, job_id: uuid.UUID) -> None:
        worker_jobs_active.inc()
        try:
            with job_context(job_id, worker="pool"):
                await self.orchestrator.process(job_id)
        except Exception as e:
            logger.error("worker_job_crashed", job_id=str(job_id), error=str(e))
        finally:
            worker_jobs_active.dec()

    async def drain(self) -> int:
        """Process queued jobs until none remain. Returns the number processed."""
        processed = 0
        seen: set[uuid.UUID] = set()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(job_id: uuid.UUID) -> None:
            async with semaphore:
                await self._run_one(job_id)

        while True:
            # A run that crashed before claiming leaves its job queued; skip it.
            job_ids = [j for j in await self._queued(self.concurrency + len(seen)) if j not in seen]
            if not job_ids:
                return processed
            seen.update(job_ids)
            await asyncio.gather(*(_bounded(j) for j in job_ids))
            processed += len(job_ids)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.orchestrator.reclaim_stale()
            except Exception as e:
                logger.error("worker_reclaim_failed", error=str(e))
            free = self.concurrency - len(self._inflight)
            if free > 0:
                try:
                    job_ids = await self._queued(free + len(self._inflight))
                except Exception as e:
                    logger.error("worker_poll_failed", error=str(e))
                    job_ids = []
                for job_id in job_ids:
                    if job_id in self._inflight or len(self._inflight) >= self.concurrency:
                        continue
                    task = asyncio.create_task(self._run_one(job_id))
                    self._inflight[job_id] = task
                    task.add_done_callback(lambda _t, j=job_id: self._inflight.pop(j, None))
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    def start(self) -> None:
        if self._loop_task is not None:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._poll_loop())
        logger.info("worker_pool_started", concurrency=self.concurrency, poll_seconds=self.poll_seconds)

    async def stop(self) -> None:
        self._running = False
        self._wakeup.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        logger.info("worker_pool_stopped")
