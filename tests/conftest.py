"""
Shared test fixtures.
Tests run against a throwaway SQLite database and the stub model client.
"""

import os
import tempfile

_TMP_ROOT = tempfile.mkdtemp(prefix="estimateai-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_ROOT}/test.db"
os.environ["ARTIFACT_ROOT"] = f"{_TMP_ROOT}/artifacts"
os.environ["MODEL_PROVIDER"] = "stub"
os.environ["RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["RETRY_JITTER_SECONDS"] = "0"
os.environ["PROMETHEUS_ENABLED"] = "false"

import pytest  # noqa: E402

from estimateai.engines.stub_engine import StubEngine  # noqa: E402
from estimateai.models import tables  # noqa: E402,F401
from estimateai.models.database import Base, async_session_factory, engine  # noqa: E402
from estimateai.models.enums import FileStatus, ItemSource  # noqa: E402
from estimateai.models.tables import Project, ProjectFile, ProjectItem  # noqa: E402
from estimateai.pipeline.comparison import ComparisonEngine  # noqa: E402
from estimateai.pipeline.orchestrator import ExtractionOrchestrator  # noqa: E402
from estimateai.pipeline.retry import BackoffPolicy  # noqa: E402
from estimateai.storage.artifact_store import ArtifactStore  # noqa: E402
from estimateai.streaming.publisher import ProgressPublisher  # noqa: E402


@pytest.fixture
async def db():
    """Fresh schema per test; yields the session factory."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_session_factory
    await engine.dispose()


@pytest.fixture
def stub():
    return StubEngine()


@pytest.fixture
def fast_policy():
    """Three attempts, no sleeping."""
    return BackoffPolicy(max_attempts=3, base_delay=0.0, jitter=0.0, timeout=None)


@pytest.fixture
def artifact_store(tmp_path):
    return ArtifactStore(str(tmp_path / "artifacts"))


@pytest.fixture
def publisher():
    return ProgressPublisher(backlog=4)


@pytest.fixture
def orchestrator(db, stub, artifact_store, publisher, fast_policy):
    return ExtractionOrchestrator(
        stub,
        session_factory=db,
        artifact_store=artifact_store,
        publisher=publisher,
        policy=fast_policy,
    )


@pytest.fixture
def comparison_engine(db, stub, fast_policy):
    return ComparisonEngine(stub, session_factory=db, policy=fast_policy, chunk_size=10, max_parallel=4)


@pytest.fixture
def make_project(db, artifact_store):
    """
    Create a project with files.

    files: list of (file_type, file_name, content) tuples.
    Returns (project_id, [file_id, ...]) in the given order.
    """

    async def _make(files=(), name="Tower A"):
        async with db() as session:
            project = Project(name=name)
            session.add(project)
            await session.flush()
            file_ids = []
            for file_type, file_name, content in files:
                record = ProjectFile(
                    project_id=project.id,
                    original_name=file_name,
                    stored_path="pending",
                    size_bytes=len(content),
                    file_type=file_type,
                    status=FileStatus.PENDING.value,
                )
                session.add(record)
                await session.flush()
                record.stored_path = artifact_store.save_upload(project.id, record.id, file_name, content)
                file_ids.append(record.id)
            await session.commit()
            return project.id, file_ids

    return _make


@pytest.fixture
def seed_items(db):
    """Insert items for a file directly, bypassing extraction."""

    async def _seed(project_id, file_id, source: ItemSource, rows, file_status=FileStatus.READY):
        async with db() as session:
            for position, row in enumerate(rows):
                session.add(
                    ProjectItem(
                        project_id=project_id,
                        file_id=file_id,
                        position=position,
                        source=source.value,
                        item_code=row.get("item_code", "ITEM"),
                        description=row.get("description", ""),
                        notes=row.get("notes", ""),
                        thickness=row.get("thickness"),
                        fields_json=row.get("fields", {}),
                    )
                )
            file = await session.get(ProjectFile, file_id)
            file.status = file_status.value
            await session.commit()

    return _seed


@pytest.fixture
def schedule_reply():
    """Model reply for a schedule with three codes."""
    return {
        "items": [
            {"item_code": "FL-01", "description": "Porcelain tile 600x600", "fields": {"CODE": "FL-01"}},
            {"item_code": "WL-02", "description": "Gypsum board partition", "fields": {"Code": "WL-02"}},
            {"description": "Suspended ceiling", "fields": {"name": "CL-03"}},
        ]
    }

