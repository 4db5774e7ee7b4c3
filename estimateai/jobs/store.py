"""
Durable job state store.

Owns job identity, idempotency and the status state machine:

    queued -> processing -> done | failed
    queued -> failed              (abandoned before dispatch)

Every transition appends a ProjectLog entry. Methods flush but never
commit; the caller owns the transaction.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from estimateai.errors import InvariantViolationError, JobNotFoundError, NotFoundError
from estimateai.jobs.logs import append_log
from estimateai.models.enums import ACTIVE_JOB_STATUSES, JobStage, JobStatus, LogLevel
from estimateai.models.tables import ExtractionJob, ProjectFile
from estimateai.observability.metrics import extraction_jobs_submitted_total

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.DONE, JobStatus.FAILED},
    JobStatus.DONE: set(),
    JobStatus.FAILED: set(),
}

_PATCHABLE = {
    "stage",
    "message",
    "attempt",
    "error_kind",
    "error_message",
    "result_json",
    "raw_text",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Job persistence bound to one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Queries ──────────────────────────────────────────────
    async def get(self, job_id: uuid.UUID) -> ExtractionJob:
        job = await self.session.get(ExtractionJob, job_id, populate_existing=True)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def active_for_file(self, file_id: uuid.UUID) -> Optional[ExtractionJob]:
        result = await self.session.execute(
            select(ExtractionJob)
            .where(ExtractionJob.file_id == file_id)
            .where(ExtractionJob.status.in_(ACTIVE_JOB_STATUSES))
            .order_by(ExtractionJob.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def latest_for_file(self, file_id: uuid.UUID) -> Optional[ExtractionJob]:
        result = await self.session.execute(
            select(ExtractionJob)
            .where(ExtractionJob.file_id == file_id)
            .order_by(ExtractionJob.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def queued_job_ids(self, limit: int) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(ExtractionJob.id)
            .where(ExtractionJob.status == JobStatus.QUEUED.value)
            .order_by(ExtractionJob.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_active(self, project_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(ExtractionJob.id)
            .where(ExtractionJob.project_id == project_id)
            .where(ExtractionJob.status.in_(ACTIVE_JOB_STATUSES))
        )
        return len(result.scalars().all())

    async def stale_processing(
        self,
        cutoff: datetime,
        project_id: Optional[uuid.UUID] = None,
    ) -> list[ExtractionJob]:
        """Processing jobs with no progress since cutoff."""
        query = (
            select(ExtractionJob)
            .where(ExtractionJob.status == JobStatus.PROCESSING.value)
            .where(ExtractionJob.updated_at < cutoff)
        )
        if project_id is not None:
            query = query.where(ExtractionJob.project_id == project_id)
        result = await self.session.execute(query.order_by(ExtractionJob.updated_at))
        return list(result.scalars().all())

    async def find_by_key(
        self,
        file_id: uuid.UUID,
        idempotency_key: str,
        include_failed: bool = False,
    ) -> Optional[ExtractionJob]:
        query = (
            select(ExtractionJob)
            .where(ExtractionJob.file_id == file_id)
            .where(ExtractionJob.idempotency_key == idempotency_key)
        )
        if not include_failed:
            query = query.where(ExtractionJob.status != JobStatus.FAILED.value)
        result = await self.session.execute(query.order_by(ExtractionJob.created_at.desc()).limit(1))
        return result.scalars().first()

    # ── Commands ─────────────────────────────────────────────
    async def submit(
        self,
        project_id: uuid.UUID,
        file_id: uuid.UUID,
        idempotency_key: str,
    ) -> tuple[ExtractionJob, bool]:
        """
        Return (job, created).

        A job with the same (file, key) that is active or done is returned
        unchanged, as is any active job for the file. Otherwise a new
        queued job is created.
        """
        existing = await self.find_by_key(file_id, idempotency_key)
        if existing is not None:
            return existing, False

        active = await self.active_for_file(file_id)
        if active is not None:
            return active, False

        file = await self.session.get(ProjectFile, file_id)
        if file is None or file.project_id != project_id:
            raise NotFoundError(f"File {file_id} not found in project {project_id}")

        job = ExtractionJob(
            project_id=project_id,
            file_id=file_id,
            idempotency_key=idempotency_key,
            status=JobStatus.QUEUED.value,
            stage=JobStage.QUEUED.value,
            message="Queued",
        )
        try:
            async with self.session.begin_nested():
                self.session.add(job)
                await self.session.flush()
        except IntegrityError:
            # Lost a race against another submitter for the same file.
            active = await self.active_for_file(file_id)
            if active is None:
                raise
            return active, False

        await append_log(
            self.session,
            project_id,
            f"Queued extraction for {file.original_name}.",
            file_id=file_id,
            job_id=job.id,
        )
        extraction_jobs_submitted_total.labels(file_type=file.file_type).inc()
        logger.info(
            "job_submitted",
            job_id=str(job.id),
            file_id=str(file_id),
            idempotency_key=idempotency_key,
        )
        return job, True

    async def transition(
        self,
        job_id: uuid.UUID,
        next_status: JobStatus,
        log_message: Optional[str] = None,
        **patch: Any,
    ) -> ExtractionJob:
        job = await self.get(job_id)
        current = JobStatus(job.status)
        next_status = JobStatus(next_status)
        if next_status not in ALLOWED_TRANSITIONS[current]:
            raise InvariantViolationError(
                f"Illegal job transition {current.value} -> {next_status.value} for job {job_id}"
            )

        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise InvariantViolationError(f"Cannot patch job fields: {sorted(unknown)}")

        now = _now()
        job.status = next_status.value
        for key, value in patch.items():
            setattr(job, key, value)
        if next_status == JobStatus.PROCESSING and job.started_at is None:
            job.started_at = now
        if next_status.is_terminal:
            job.finished_at = now
        job.updated_at = now
        await self.session.flush()

        await self._log_transition(job, next_status, log_message)
        logger.info("job_transition", job_id=str(job_id), from_status=current.value, to_status=next_status.value)
        return job

    async def claim(self, job_id: uuid.UUID) -> Optional[ExtractionJob]:
        """Atomically move a queued job to processing. None if already claimed."""
        now = _now()
        result = await self.session.execute(
            update(ExtractionJob)
            .where(ExtractionJob.id == job_id)
            .where(ExtractionJob.status == JobStatus.QUEUED.value)
            .values(
                status=JobStatus.PROCESSING.value,
                stage=JobStage.PROCESSING.value,
                message="Processing",
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        job = await self.get(job_id)
        await self._log_transition(job, JobStatus.PROCESSING, None)
        logger.info("job_claimed", job_id=str(job_id))
        return job

    async def update_progress(
        self,
        job_id: uuid.UUID,
        stage: JobStage,
        message: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> ExtractionJob:
        job = await self.get(job_id)
        if job.status != JobStatus.PROCESSING.value:
            raise InvariantViolationError(f"Job {job_id} is {job.status}, not processing")
        job.stage = JobStage(stage).value
        if message is not None:
            job.message = message
        if attempt is not None:
            job.attempt = attempt
        job.updated_at = _now()
        await self.session.flush()
        return job

    async def _log_transition(
        self,
        job: ExtractionJob,
        status: JobStatus,
        log_message: Optional[str],
    ) -> None:
        file = await self.session.get(ProjectFile, job.file_id)
        name = file.original_name if file else str(job.file_id)
        level = LogLevel.INFO
        if log_message is None:
            if status == JobStatus.PROCESSING:
                log_message = f"Starting extraction for {name}."
            elif status == JobStatus.DONE:
                log_message = f"Extraction completed for {name}."
            else:
                log_message = f"Extraction failed for {name}: {job.error_message or 'unknown error'}"
        if status == JobStatus.FAILED:
            level = LogLevel.ERROR
        await append_log(
            self.session,
            job.project_id,
            log_message,
            level=level,
            file_id=job.file_id,
            job_id=job.id,
        )
