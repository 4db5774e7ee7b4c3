"""
Tests for the in-process worker pool.
"""

from sqlalchemy import select

from estimateai.engines.base import ExtractionKind
from estimateai.jobs.store import JobStore
from estimateai.models.enums import FileStatus, JobStatus
from estimateai.models.tables import ExtractionJob, ProjectFile
from estimateai.worker.pool import ExtractionWorkerPool


class CrashingOrchestrator:
    def __init__(self):
        self.calls = 0

    async def process(self, job_id):
        self.calls += 1
        raise RuntimeError("database went away")


class TestDrain:

    async def test_drains_schedule_and_drawing(self, db, stub, orchestrator, make_project, schedule_reply):
        stub.script(ExtractionKind.SCHEDULE, schedule_reply)
        stub.script(ExtractionKind.DRAWING, {"items": [{"item_code": "FL-01", "description": "Tile"}]})
        project_id, file_ids = await make_project([
            ("schedule", "finishes.pdf", b"%PDF schedule"),
            ("drawing", "plan.pdf", b"%PDF plan"),
        ])
        await orchestrator.start(project_id, "key-1")

        pool = ExtractionWorkerPool(orchestrator, concurrency=1, session_factory=db)
        processed = await pool.drain()

        assert processed >= 2
        async with db() as session:
            files = [await session.get(ProjectFile, file_id) for file_id in file_ids]
            queued = (
                await session.execute(select(ExtractionJob).where(ExtractionJob.status == JobStatus.QUEUED.value))
            ).scalars().all()
        assert [f.status for f in files] == [FileStatus.READY.value, FileStatus.READY.value]
        assert queued == []

    async def test_nothing_queued(self, db, orchestrator):
        assert await ExtractionWorkerPool(orchestrator, concurrency=2, session_factory=db).drain() == 0

    async def test_crashed_job_is_not_retried_forever(self, db, make_project):
        project_id, (file_id,) = await make_project([("boq", "bill.csv", b"a,b")])
        async with db() as session:
            await JobStore(session).submit(project_id, file_id, "key-1")
            await session.commit()

        crashing = CrashingOrchestrator()
        processed = await ExtractionWorkerPool(crashing, concurrency=1, session_factory=db).drain()

        assert processed == 1
        assert crashing.calls == 1
