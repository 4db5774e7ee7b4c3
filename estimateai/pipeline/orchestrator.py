"""
Extraction orchestrator.

Turns submitted files into jobs and drives each job to a terminal state:

1. Claim the queued job (one worker per job)
2. Dispatch by file kind: schedule, drawing or BOQ
3. Call the model client through the shared retry helper
4. Replace the file's items, mark job done and file ready
5. On failure, mark job and file failed with a classified error
6. After a schedule completes, re-queue drawings that were waiting for codes

Database sessions are short-lived and never held across a model call.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from estimateai.config import settings
from estimateai.engines.base import ArtifactRef, ErrorClass, ExtractionKind, ModelClient, ModelOutput
from estimateai.errors import (
    ConcurrentRetryError,
    NotFoundError,
    PreconditionUnmetError,
    RetryNotAllowedError,
)
from estimateai.jobs.logs import append_log
from estimateai.jobs.store import JobStore
from estimateai.models.database import async_session_factory
from estimateai.models.enums import (
    ErrorKind,
    FileStatus,
    FileType,
    ItemSource,
    JobStage,
    JobStatus,
    LogLevel,
    ProjectStatus,
    RetryReason,
)
from estimateai.models.tables import ExtractionJob, Project, ProjectFile, ProjectItem
from estimateai.observability.metrics import (
    extraction_job_duration_seconds,
    extraction_jobs_finished_total,
    items_extracted_total,
    model_call_latency_seconds,
)
from estimateai.pipeline import prompts
from estimateai.pipeline.boq_sources import BoqSheet, read_boq_sheets
from estimateai.pipeline.chunker import chunk
from estimateai.pipeline.items import collect_schedule_codes, normalize_item, schedule_code_of
from estimateai.pipeline.retry import BackoffPolicy, call_with_retry
from estimateai.storage.artifact_store import ArtifactStore
from estimateai.streaming.publisher import ProgressPublisher
from estimateai.streaming.snapshot import build_snapshot

logger = structlog.get_logger(__name__)

PRECONDITION_MESSAGE = "Drawings require schedule codes first; extract a schedule, then retry."
INTERRUPTED_MESSAGE = "Extraction was interrupted before it finished; retry the file."
STALE_MESSAGE = "Worker stopped reporting progress; retry the file."

# Schedules first so drawings in the same batch find codes as early as possible.
_KIND_ORDER = {FileType.SCHEDULE.value: 0, FileType.BOQ.value: 1, FileType.DRAWING.value: 2}

_SOURCE_BY_TYPE = {
    FileType.SCHEDULE.value: ItemSource.SCHEDULE,
    FileType.DRAWING.value: ItemSource.CAD,
    FileType.BOQ.value: ItemSource.BOQ,
}

Dispatcher = Callable[[list[uuid.UUID]], Any]


@dataclass
class ExtractionOutcome:
    items: list[dict[str, Any]] = field(default_factory=list)
    raw_text: str = ""


def error_message(error: BaseException) -> str:
    message = getattr(error, "message", None) or str(error)
    if not message and isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "Model call timed out"
    return message or error.__class__.__name__


class ExtractionOrchestrator:
    """
    Owns the extraction lifecycle for every project file.

    The model client, session factory, publisher and dispatcher are
    injected so the API process, RQ workers and tests can each wire
    their own.
    """

    def __init__(
        self,
        client: ModelClient,
        session_factory: async_sessionmaker = async_session_factory,
        artifact_store: Optional[ArtifactStore] = None,
        publisher: Optional[ProgressPublisher] = None,
        dispatcher: Optional[Dispatcher] = None,
        policy: Optional[BackoffPolicy] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.artifact_store = artifact_store or ArtifactStore()
        self.publisher = publisher
        self.dispatcher = dispatcher
        self.policy = policy or BackoffPolicy.from_settings()

    # ── Submission ───────────────────────────────────────────
    async def start(
        self,
        project_id: uuid.UUID,
        idempotency_key: str,
        file_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> list[ExtractionJob]:
        """Submit one job per file (all project files when file_ids is None)."""
        await self.reclaim_stale(project_id)
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")

            query = select(ProjectFile).where(ProjectFile.project_id == project_id)
            if file_ids:
                query = query.where(ProjectFile.id.in_(list(file_ids)))
            files = list((await session.execute(query)).scalars().all())
            if file_ids:
                missing = set(file_ids) - {f.id for f in files}
                if missing:
                    raise NotFoundError(f"Files not found in project: {sorted(str(m) for m in missing)}")
            files.sort(key=lambda f: (_KIND_ORDER.get(f.file_type, 9), f.created_at))

            store = JobStore(session)
            jobs: list[ExtractionJob] = []
            created_ids: list[uuid.UUID] = []
            for f in files:
                job, created = await store.submit(project_id, f.id, idempotency_key)
                jobs.append(job)
                if created:
                    created_ids.append(job.id)
                    if f.status != FileStatus.READY.value:
                        f.status = FileStatus.PENDING.value

            if created_ids:
                project.status = ProjectStatus.ANALYZING.value
                await append_log(session, project_id, f"Extraction started for {len(created_ids)} file(s).")
            await session.commit()

        logger.info(
            "extraction_started",
            project_id=str(project_id),
            files=len(files),
            created=len(created_ids),
        )
        await self._dispatch(created_ids)
        await self.notify(project_id)
        return jobs

    async def retry(
        self,
        project_id: uuid.UUID,
        file_id: uuid.UUID,
        idempotency_key: str,
        reason: RetryReason = RetryReason.USER,
    ) -> ExtractionJob:
        """
        Queue a fresh job for one file.

        Raises ConcurrentRetryError while the file has an active job, except
        for drawings re-queued because schedule data arrived, which get the
        active job back.
        """
        await self.reclaim_stale(project_id)
        async with self.session_factory() as session:
            file = await session.get(ProjectFile, file_id)
            if file is None or file.project_id != project_id:
                raise NotFoundError(f"File {file_id} not found in project {project_id}")

            store = JobStore(session)
            replay = await store.find_by_key(file_id, idempotency_key, include_failed=True)
            if replay is not None:
                return replay

            active = await store.active_for_file(file_id)
            if active is not None:
                if reason == RetryReason.SCHEDULE_READY and file.file_type == FileType.DRAWING.value:
                    return active
                raise ConcurrentRetryError(f"An extraction for {file.original_name} is already in progress")

            if reason == RetryReason.USER and file.status != FileStatus.FAILED.value:
                raise RetryNotAllowedError(
                    f"Only failed files can be retried; {file.original_name} is {file.status}"
                )

            job, _ = await store.submit(project_id, file_id, idempotency_key)
            file.status = FileStatus.PENDING.value
            project = await session.get(Project, project_id)
            if project is not None:
                project.status = ProjectStatus.ANALYZING.value
            if reason == RetryReason.SCHEDULE_READY:
                message = f"Queued extraction for {file.original_name} after schedule completed."
            else:
                message = f"Retry extraction queued for {file.original_name}."
            await append_log(session, project_id, message, file_id=file_id, job_id=job.id)
            await session.commit()

        logger.info("extraction_retry_queued", job_id=str(job.id), file_id=str(file_id), reason=reason.value)
        await self._dispatch([job.id])
        await self.notify(project_id)
        return job

    # ── Processing ───────────────────────────────────────────
    async def process(self, job_id: uuid.UUID) -> Optional[ExtractionJob]:
        """Run one queued job to a terminal state. None if another worker owns it."""
        async with self.session_factory() as session:
            store = JobStore(session)
            job = await store.claim(job_id)
            if job is None:
                await session.rollback()
                logger.info("job_already_claimed", job_id=str(job_id))
                return None
            file = await session.get(ProjectFile, job.file_id)
            project_id = job.project_id

            if file.status == FileStatus.READY.value:
                job = await store.transition(
                    job_id,
                    JobStatus.DONE,
                    log_message=f"Skipped {file.original_name} (already ready).",
                    stage=JobStage.FINALIZING.value,
                    message="Skipped (already ready)",
                )
                await session.commit()
                await self._finish_project(project_id)
                return job

            file.status = FileStatus.PROCESSING.value
            file_type = file.file_type
            file_name = file.original_name
            stored_path = file.stored_path
            mime_type = file.mime_type
            await session.commit()

        await self.notify(project_id)
        started = time.monotonic()
        log = logger.bind(job_id=str(job_id), file_id=str(job.file_id), file_type=file_type)
        log.info("job_processing")

        try:
            if file_type == FileType.SCHEDULE.value:
                outcome = await self._extract_schedule(job, file_name, stored_path, mime_type)
            elif file_type == FileType.DRAWING.value:
                outcome = await self._extract_drawing(job, file_name, stored_path, mime_type)
            else:
                outcome = await self._extract_boq(job, file_name, stored_path, mime_type)
        except asyncio.CancelledError:
            log.warning("job_interrupted")
            extraction_jobs_finished_total.labels(
                file_type=file_type, status=JobStatus.FAILED.value, error_kind=ErrorKind.TRANSIENT.value
            ).inc()
            await asyncio.shield(self._interrupted(job_id, project_id))
            raise
        except Exception as e:
            kind = self._error_kind(e)
            log.error("job_failed", error_kind=kind.value, error=error_message(e))
            job = await self._fail(job_id, kind, error_message(e))
            extraction_jobs_finished_total.labels(
                file_type=file_type, status=JobStatus.FAILED.value, error_kind=kind.value
            ).inc()
            if kind == ErrorKind.PRECONDITION_UNMET:
                # A schedule may have finished while this drawing was checking for codes.
                await self.requeue_waiting_drawings(project_id)
        else:
            job = await self._complete(job_id, file_type, outcome)
            log.info("job_done", items=len(outcome.items))
            extraction_jobs_finished_total.labels(
                file_type=file_type, status=JobStatus.DONE.value, error_kind=""
            ).inc()
            if file_type == FileType.SCHEDULE.value:
                await self.requeue_waiting_drawings(project_id)
        finally:
            extraction_job_duration_seconds.labels(file_type=file_type).observe(time.monotonic() - started)

        await self._finish_project(project_id)
        return job

    def _error_kind(self, error: BaseException) -> ErrorKind:
        if isinstance(error, PreconditionUnmetError):
            return ErrorKind.PRECONDITION_UNMET
        if self.client.classify(error) == ErrorClass.RETRYABLE:
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL

    async def _complete(self, job_id: uuid.UUID, file_type: str, outcome: ExtractionOutcome) -> ExtractionJob:
        source = _SOURCE_BY_TYPE[file_type]
        async with self.session_factory() as session:
            store = JobStore(session)
            job = await store.get(job_id)
            file = await session.get(ProjectFile, job.file_id)

            await self._replace_items(session, job.project_id, file.id, outcome.items)
            file.status = FileStatus.READY.value
            file.parts_json = None
            job = await store.transition(
                job_id,
                JobStatus.DONE,
                log_message=f"Extraction completed for {file.original_name} ({len(outcome.items)} item(s)).",
                stage=JobStage.FINALIZING.value,
                message="Completed",
                raw_text=outcome.raw_text,
                result_json={"itemCount": len(outcome.items)},
            )
            await session.commit()
        items_extracted_total.labels(source=source.value).inc(len(outcome.items))
        return job

    @staticmethod
    async def _replace_items(
        session: AsyncSession, project_id: uuid.UUID, file_id: uuid.UUID, items: list[dict[str, Any]]
    ) -> None:
        await session.execute(delete(ProjectItem).where(ProjectItem.file_id == file_id))
        for position, values in enumerate(items):
            session.add(ProjectItem(project_id=project_id, file_id=file_id, position=position, **values))
        await session.flush()

    async def _fail(self, job_id: uuid.UUID, kind: ErrorKind, message: str) -> ExtractionJob:
        async with self.session_factory() as session:
            store = JobStore(session)
            job = await store.get(job_id)
            file = await session.get(ProjectFile, job.file_id)
            file.status = FileStatus.FAILED.value
            job = await store.transition(
                job_id,
                JobStatus.FAILED,
                log_message=f"Extraction failed for {file.original_name}: {message}",
                message="Failed",
                error_kind=kind.value,
                error_message=message,
            )
            await session.commit()
        return job

    async def _interrupted(self, job_id: uuid.UUID, project_id: uuid.UUID) -> None:
        await self._fail(job_id, ErrorKind.TRANSIENT, INTERRUPTED_MESSAGE)
        await self._finish_project(project_id)

    async def reclaim_stale(self, project_id: Optional[uuid.UUID] = None) -> list[uuid.UUID]:
        """
        Fail processing jobs whose worker has gone quiet for longer than
        settings.stale_job_seconds, so their files can be retried.

        Covers workers that died without running any cleanup, such as an
        RQ work horse killed at its job timeout.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.stale_job_seconds)
        async with self.session_factory() as session:
            store = JobStore(session)
            stale = await store.stale_processing(cutoff, project_id)
            reclaimed = [(job.id, job.project_id) for job in stale]
            for job in stale:
                file = await session.get(ProjectFile, job.file_id)
                file.status = FileStatus.FAILED.value
                await store.transition(
                    job.id,
                    JobStatus.FAILED,
                    log_message=f"Extraction for {file.original_name} stopped reporting progress.",
                    message="Failed",
                    error_kind=ErrorKind.TRANSIENT.value,
                    error_message=STALE_MESSAGE,
                )
            await session.commit()

        for job_id, _ in reclaimed:
            logger.warning("stale_job_reclaimed", job_id=str(job_id))
        for stale_project_id in {p for _, p in reclaimed}:
            await self._finish_project(stale_project_id)
        return [job_id for job_id, _ in reclaimed]

    async def _finish_project(self, project_id: uuid.UUID) -> None:
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is not None:
                active = await JobStore(session).count_active(project_id)
                project.status = (
                    ProjectStatus.ANALYZING.value if active else ProjectStatus.FINALIZED.value
                )
                await session.commit()
        await self.notify(project_id)

    # ── Schedule → drawing hand-off ──────────────────────────
    async def _usable_schedule_codes(self, session: AsyncSession, project_id: uuid.UUID) -> list[str]:
        rows = (
            await session.execute(
                select(ProjectItem.fields_json)
                .where(ProjectItem.project_id == project_id)
                .where(ProjectItem.source == ItemSource.SCHEDULE.value)
                .order_by(ProjectItem.created_at, ProjectItem.position)
            )
        ).all()
        return collect_schedule_codes(
            [schedule_code_of(fields) for (fields,) in rows], settings.SCHEDULE_CODE_MAX_LENGTH
        )

    async def schedule_codes(self, session: AsyncSession, project_id: uuid.UUID) -> list[str]:
        """Schedule CODE tokens for the project, capped at SCHEDULE_CODE_LIMIT."""
        codes = await self._usable_schedule_codes(session, project_id)
        if len(codes) > settings.SCHEDULE_CODE_LIMIT:
            logger.warning(
                "schedule_codes_truncated",
                project_id=str(project_id),
                total=len(codes),
                limit=settings.SCHEDULE_CODE_LIMIT,
            )
            await append_log(
                session,
                project_id,
                f"Schedule has {len(codes)} codes; only the first {settings.SCHEDULE_CODE_LIMIT} "
                "are used for drawing extraction.",
                level=LogLevel.WARNING,
            )
            codes = codes[: settings.SCHEDULE_CODE_LIMIT]
        return codes

    async def requeue_waiting_drawings(self, project_id: uuid.UUID) -> list[ExtractionJob]:
        """
        Once every schedule file is ready and the project has usable schedule
        codes, re-queue drawings that are pending or failed for lack of them.
        """
        async with self.session_factory() as session:
            schedules = (
                await session.execute(
                    select(ProjectFile)
                    .where(ProjectFile.project_id == project_id)
                    .where(ProjectFile.file_type == FileType.SCHEDULE.value)
                )
            ).scalars().all()
            if not schedules or any(f.status != FileStatus.READY.value for f in schedules):
                return []
            # Must match the check in _extract_drawing.
            if not await self._usable_schedule_codes(session, project_id):
                return []

            drawings = (
                await session.execute(
                    select(ProjectFile)
                    .where(ProjectFile.project_id == project_id)
                    .where(ProjectFile.file_type == FileType.DRAWING.value)
                    .where(ProjectFile.status.in_([FileStatus.PENDING.value, FileStatus.FAILED.value]))
                )
            ).scalars().all()
            store = JobStore(session)
            waiting: list[uuid.UUID] = []
            for drawing in drawings:
                if drawing.status == FileStatus.FAILED.value:
                    latest = await store.latest_for_file(drawing.id)
                    if latest is None or latest.error_kind != ErrorKind.PRECONDITION_UNMET.value:
                        continue
                waiting.append(drawing.id)

        requeued = []
        for drawing_id in waiting:
            job = await self.retry(
                project_id,
                drawing_id,
                f"schedule-ready:{uuid.uuid4()}",
                reason=RetryReason.SCHEDULE_READY,
            )
            requeued.append(job)
        if requeued:
            logger.info("drawings_requeued_after_schedule", project_id=str(project_id), count=len(requeued))
        return requeued

    # ── Per-kind extraction ──────────────────────────────────
    async def _extract_schedule(
        self, job: ExtractionJob, file_name: str, stored_path: str, mime_type: Optional[str]
    ) -> ExtractionOutcome:
        output = await self._extract_document(
            job, file_name, stored_path, mime_type, prompts.schedule_prompt(), ExtractionKind.SCHEDULE
        )
        items = [normalize_item(raw, ItemSource.SCHEDULE) for raw in output.items]
        return ExtractionOutcome(items=items, raw_text=output.raw_text)

    async def _extract_drawing(
        self, job: ExtractionJob, file_name: str, stored_path: str, mime_type: Optional[str]
    ) -> ExtractionOutcome:
        async with self.session_factory() as session:
            codes = await self.schedule_codes(session, job.project_id)
            await session.commit()
        if not codes:
            raise PreconditionUnmetError(PRECONDITION_MESSAGE)

        output = await self._extract_document(
            job, file_name, stored_path, mime_type, prompts.drawing_prompt(codes), ExtractionKind.DRAWING
        )
        items = [normalize_item(raw, ItemSource.CAD) for raw in output.items]
        return ExtractionOutcome(items=items, raw_text=output.raw_text)

    async def _extract_boq(
        self, job: ExtractionJob, file_name: str, stored_path: str, mime_type: Optional[str]
    ) -> ExtractionOutcome:
        full_path = self.artifact_store.full_path(stored_path)
        sheets = await asyncio.to_thread(read_boq_sheets, str(full_path))
        if sheets is None:
            output = await self._extract_document(
                job, file_name, stored_path, mime_type, prompts.boq_prompt(), ExtractionKind.BOQ
            )
            items = []
            for raw in output.items:
                values = normalize_item(raw, ItemSource.BOQ)
                category = values["fields_json"].get("category")
                values["metadata_json"] = {"category": category} if category else None
                items.append(values)
            return ExtractionOutcome(items=items, raw_text=output.raw_text)

        return await self._extract_boq_parts(job, file_name, sheets)

    async def _extract_boq_parts(
        self, job: ExtractionJob, file_name: str, sheets: list[BoqSheet]
    ) -> ExtractionOutcome:
        """
        One text-only call per sheet part. A failed part does not stop the
        others; finished parts are recorded on the file, their items stay
        visible, and the next run only calls the parts that failed.
        """
        previous = await self._load_parts(job.file_id)
        parts_state: dict[str, dict[str, Any]] = {}
        items: list[dict[str, Any]] = []
        raw_parts: list[str] = []
        failures: list[Exception] = []

        for sheet in sheets:
            parts = chunk(sheet.rows, settings.BOQ_ROWS_PER_CALL)
            for index, rows in enumerate(parts, start=1):
                label = f"{sheet.name} part {index}/{len(parts)}"
                kept = previous.get(label)
                if kept is not None and kept.get("status") == JobStatus.DONE.value:
                    await self._job_log(job, f"Keeping {file_name} sheet {label} from the previous run.")
                    parts_state[label] = kept
                    items.extend(kept["items"])
                    raw_parts.append(kept.get("rawText", ""))
                    continue

                await self._job_log(job, f"Extracting {file_name} sheet {label}.")
                prompt = prompts.boq_rows_prompt(sheet.name, [r.text for r in rows], index, len(parts))
                try:
                    output = await self._call(
                        job.id,
                        label,
                        lambda prompt=prompt: self.client.extract(None, prompt, ExtractionKind.BOQ),
                    )
                except Exception as e:
                    logger.warning("boq_part_failed", job_id=str(job.id), part=label, error=error_message(e))
                    parts_state[label] = {"status": JobStatus.FAILED.value, "error": error_message(e)}
                    failures.append(e)
                else:
                    part_items = []
                    for raw in output.items:
                        values = normalize_item(raw, ItemSource.BOQ)
                        values["metadata_json"] = {
                            "sheetName": sheet.name,
                            "rowStart": rows[0].row_index,
                            "rowEnd": rows[-1].row_index,
                            "chunkIndex": index,
                            "chunkCount": len(parts),
                        }
                        part_items.append(values)
                    parts_state[label] = {
                        "status": JobStatus.DONE.value,
                        "items": part_items,
                        "rawText": output.raw_text,
                    }
                    items.extend(part_items)
                    raw_parts.append(output.raw_text)
                await self._save_parts(job.file_id, parts_state)

        if failures:
            async with self.session_factory() as session:
                await self._replace_items(session, job.project_id, job.file_id, items)
                await append_log(
                    session,
                    job.project_id,
                    f"{len(failures)} of {len(parts_state)} part(s) of {file_name} failed; "
                    "finished parts are kept and only failed parts run on retry.",
                    level=LogLevel.ERROR,
                    file_id=job.file_id,
                    job_id=job.id,
                )
                await session.commit()
            raise failures[0]
        return ExtractionOutcome(items=items, raw_text="\n\n".join(raw_parts))

    async def _load_parts(self, file_id: uuid.UUID) -> dict[str, dict[str, Any]]:
        async with self.session_factory() as session:
            file = await session.get(ProjectFile, file_id)
            return dict(file.parts_json or {})

    async def _save_parts(self, file_id: uuid.UUID, parts_state: dict[str, dict[str, Any]]) -> None:
        async with self.session_factory() as session:
            file = await session.get(ProjectFile, file_id)
            file.parts_json = dict(parts_state)
            await session.commit()

    async def _extract_document(
        self,
        job: ExtractionJob,
        file_name: str,
        stored_path: str,
        mime_type: Optional[str],
        prompt: str,
        kind: ExtractionKind,
    ) -> ModelOutput:
        """Upload, extract, and always release the provider artifact."""
        full_path = str(self.artifact_store.full_path(stored_path))
        artifact: Optional[ArtifactRef] = None
        try:
            await self._progress(job.id, JobStage.UPLOADING, f"Uploading {file_name}")
            artifact = await call_with_retry(
                lambda: self.client.upload(full_path, file_name, mime_type),
                self.client.classify,
                self.policy,
                label="upload",
            )
            return await self._call(
                job.id,
                f"Extracting {file_name}",
                lambda: self.client.extract(artifact, prompt, kind),
            )
        finally:
            if artifact is not None:
                await self.client.delete(artifact)

    async def _call(
        self,
        job_id: uuid.UUID,
        label: str,
        operation: Callable[[], Awaitable[ModelOutput]],
    ) -> ModelOutput:
        attempts = 0

        async def _attempt() -> ModelOutput:
            nonlocal attempts
            attempts += 1
            await self._progress(job_id, JobStage.EXTRACTING, f"{label} (attempt {attempts})", attempts)
            started = time.monotonic()
            try:
                return await operation()
            finally:
                model_call_latency_seconds.labels(
                    engine_name=self.client.engine_name, operation="extract"
                ).observe(time.monotonic() - started)

        return await call_with_retry(_attempt, self.client.classify, self.policy, label="extract")

    async def _progress(
        self,
        job_id: uuid.UUID,
        stage: JobStage,
        message: str,
        attempt: Optional[int] = None,
    ) -> None:
        async with self.session_factory() as session:
            await JobStore(session).update_progress(job_id, stage, message, attempt)
            await session.commit()

    async def _job_log(self, job: ExtractionJob, message: str) -> None:
        async with self.session_factory() as session:
            await append_log(session, job.project_id, message, file_id=job.file_id, job_id=job.id)
            await session.commit()
        await self.notify(job.project_id)

    # ── Fan-out ──────────────────────────────────────────────
    async def _dispatch(self, job_ids: list[uuid.UUID]) -> None:
        if not job_ids or self.dispatcher is None:
            return
        result = self.dispatcher(job_ids)
        if asyncio.iscoroutine(result):
            await result

    async def notify(self, project_id: uuid.UUID) -> None:
        """Push a fresh snapshot to in-process stream subscribers."""
        if self.publisher is None or not self.publisher.subscriber_count(project_id):
            return
        async with self.session_factory() as session:
            snapshot = await build_snapshot(session, project_id)
        self.publisher.publish(project_id, snapshot)
