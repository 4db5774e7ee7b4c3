"""
HTTP-level tests for project, extraction, comparison and stream endpoints.
Requests go through httpx's ASGI transport; the lifespan (worker pool)
is not started, so jobs are processed explicitly through the orchestrator.
"""

import uuid

import httpx
import pytest

from estimateai.config import settings
from estimateai.dependencies import (
    get_artifact_store,
    get_comparison_engine,
    get_model_client,
    get_orchestrator,
    get_progress_publisher,
)
from estimateai.engines.base import ExtractionKind, ModelClientError
from estimateai.jobs.logs import append_log
from estimateai.main import app
from estimateai.api.stream import project_events


@pytest.fixture
async def client(db, stub, orchestrator, comparison_engine, artifact_store, publisher):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_comparison_engine] = lambda: comparison_engine
    app.dependency_overrides[get_artifact_store] = lambda: artifact_store
    app.dependency_overrides[get_model_client] = lambda: stub
    app.dependency_overrides[get_progress_publisher] = lambda: publisher
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.fixture
def project(client):
    """Create a project and upload files through the API."""

    async def _create(schedules=(), boq=(), drawings=()):
        response = await client.post("/projects", json={"name": "Tower A"})
        assert response.status_code == 201
        project_id = response.json()["id"]
        files = [("schedules", (name, content, "application/pdf")) for name, content in schedules]
        files += [("boq", (name, content, "text/csv")) for name, content in boq]
        files += [("drawings", (name, content, "application/pdf")) for name, content in drawings]
        file_ids = []
        if files:
            response = await client.post(f"/projects/{project_id}/files", files=files)
            assert response.status_code == 201
            file_ids = [f["id"] for f in response.json()["files"]]
        return project_id, file_ids

    return _create


class TestProjects:

    async def test_create_and_get(self, client):
        response = await client.post("/projects", json={"name": "  Tower A  "})
        body = response.json()
        assert body["name"] == "Tower A"
        assert body["status"] == "draft"
        assert "createdAt" in body

        response = await client.get(f"/projects/{body['id']}")
        assert response.status_code == 200

    async def test_unknown_project(self, client):
        response = await client.get(f"/projects/{uuid.uuid4()}")
        assert response.status_code == 404

    async def test_upload_files(self, client, project):
        project_id, file_ids = await project(
            schedules=[("finishes.pdf", b"%PDF schedule")],
            boq=[("bill.csv", b"1.1,Tile,10,m2")],
        )
        response = await client.get(f"/projects/{project_id}/files")
        files = response.json()["files"]
        assert {f["fileType"] for f in files} == {"schedule", "boq"}
        assert all(f["status"] == "pending" for f in files)
        assert {f["originalName"] for f in files} == {"finishes.pdf", "bill.csv"}

        logs = (await client.get(f"/projects/{project_id}/logs")).json()["logs"]
        assert logs[0]["message"] == "Uploaded 2 file(s)."

    async def test_empty_upload_rejected(self, client, project):
        project_id, _ = await project()
        response = await client.post(
            f"/projects/{project_id}/files",
            files=[("boq", ("bill.csv", b"", "text/csv"))],
        )
        assert response.status_code == 400

    async def test_delete_file(self, client, project):
        project_id, (file_id,) = await project(boq=[("bill.csv", b"1.1,Tile")])
        response = await client.delete(f"/projects/{project_id}/files/{file_id}")
        assert response.status_code == 204
        assert (await client.get(f"/projects/{project_id}/files")).json()["files"] == []

    async def test_delete_refused_while_extracting(self, client, project):
        project_id, (file_id,) = await project(boq=[("bill.csv", b"1.1,Tile")])
        await client.post(f"/projects/{project_id}/extractions/start")
        response = await client.delete(f"/projects/{project_id}/files/{file_id}")
        assert response.status_code == 409

    async def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "secret")
        assert (await client.post("/projects", json={"name": "A"})).status_code == 401
        response = await client.post("/projects", json={"name": "A"}, headers={"X-API-Key": "secret"})
        assert response.status_code == 201


class TestExtractions:

    async def test_start_returns_jobs(self, client, project):
        project_id, file_ids = await project(
            schedules=[("finishes.pdf", b"%PDF")],
            drawings=[("plan.pdf", b"%PDF")],
        )
        response = await client.post(
            f"/projects/{project_id}/extractions/start", headers={"Idempotency-Key": "batch-1"}
        )
        assert response.status_code == 202
        jobs = response.json()["jobs"]
        assert len(jobs) == 2
        assert all(j["status"] == "queued" for j in jobs)
        assert set(jobs[0]) == {"id", "fileId", "status", "createdAt", "updatedAt"}

        again = await client.post(
            f"/projects/{project_id}/extractions/start", headers={"Idempotency-Key": "batch-1"}
        )
        assert [j["id"] for j in again.json()["jobs"]] == [j["id"] for j in jobs]

    async def test_start_subset(self, client, project):
        project_id, (schedule_id, boq_id) = await project(
            schedules=[("finishes.pdf", b"%PDF")], boq=[("bill.csv", b"1.1,Tile")]
        )
        response = await client.post(
            f"/projects/{project_id}/extractions/start", json={"fileIds": [boq_id]}
        )
        assert [j["fileId"] for j in response.json()["jobs"]] == [boq_id]

    async def test_start_unknown_project(self, client):
        response = await client.post(f"/projects/{uuid.uuid4()}/extractions/start")
        assert response.status_code == 404

    async def test_poll_job(self, client, project, orchestrator, stub, schedule_reply):
        stub.script(ExtractionKind.SCHEDULE, schedule_reply)
        project_id, _ = await project(schedules=[("finishes.pdf", b"%PDF")])
        (job,) = (await client.post(f"/projects/{project_id}/extractions/start")).json()["jobs"]

        queued = (await client.get(f"/extractions/jobs/{job['id']}")).json()
        assert queued["status"] == "queued"
        assert queued["attempt"] == 0
        assert "error" not in queued
        assert "result" not in queued

        await orchestrator.process(uuid.UUID(job["id"]))
        done = (await client.get(f"/extractions/jobs/{job['id']}")).json()
        assert done["jobId"] == job["id"]
        assert done["status"] == "done"
        assert done["result"] == {"itemCount": 3}
        assert done["finishedAt"] is not None

        items = (await client.get(f"/projects/{project_id}/items", params={"source": "schedule"})).json()["items"]
        assert [i["fields"]["CODE"] for i in items] == ["FL-01", "WL-02", "CL-03"]

    async def test_failed_job_reports_error(self, client, project, orchestrator, stub):
        project_id, _ = await project(drawings=[("plan.pdf", b"%PDF")])
        (job,) = (await client.post(f"/projects/{project_id}/extractions/start")).json()["jobs"]
        await orchestrator.process(uuid.UUID(job["id"]))
        body = (await client.get(f"/extractions/jobs/{job['id']}")).json()
        assert body["status"] == "failed"
        assert body["error"] == {
            "kind": "precondition_unmet",
            "message": "Drawings require schedule codes first; extract a schedule, then retry.",
        }

    async def test_unknown_job(self, client):
        assert (await client.get(f"/extractions/jobs/{uuid.uuid4()}")).status_code == 404

    async def test_retry_flow(self, client, project, orchestrator, stub):
        stub.script(ExtractionKind.BOQ, ModelClientError("stub", "BAD_REQUEST", "invalid document", retryable=False))
        project_id, (file_id,) = await project(boq=[("bill.png", b"\x89PNG")])
        (job,) = (await client.post(f"/projects/{project_id}/extractions/start")).json()["jobs"]

        conflict = await client.post(f"/projects/{project_id}/files/{file_id}/retry")
        assert conflict.status_code == 409

        await orchestrator.process(uuid.UUID(job["id"]))
        response = await client.post(
            f"/projects/{project_id}/files/{file_id}/retry", headers={"Idempotency-Key": "retry-1"}
        )
        assert response.status_code == 202
        retried = response.json()
        assert retried["status"] == "queued"
        assert retried["id"] != job["id"]

        await orchestrator.process(uuid.UUID(retried["id"]))
        not_failed = await client.post(f"/projects/{project_id}/files/{file_id}/retry")
        assert not_failed.status_code == 400


class TestCompare:

    async def _extracted(self, client, project, orchestrator, stub, schedule_reply):
        stub.script(ExtractionKind.SCHEDULE, schedule_reply)
        stub.script(ExtractionKind.BOQ, {
            "items": [
                {"item_code": "1.1", "description": "Porcelain tile FL-01", "fields": {"qty": "120"}},
                {"item_code": "1.2"},
            ]
        })
        project_id, _ = await project(schedules=[("finishes.pdf", b"%PDF")], boq=[("bill.png", b"\x89PNG")])
        jobs = (await client.post(f"/projects/{project_id}/extractions/start")).json()["jobs"]
        for job in jobs:
            await orchestrator.process(uuid.UUID(job["id"]))
        return project_id

    async def test_compare_then_cached(self, client, project, orchestrator, stub, schedule_reply):
        project_id = await self._extracted(client, project, orchestrator, stub, schedule_reply)

        response = await client.post(f"/projects/{project_id}/compare")
        assert response.status_code == 200
        body = response.json()
        assert body["cached"] is False
        assert body["stats"]["comparableItems"] == 1
        (result,) = body["results"]
        assert result["itemCode"] == "FL-01"
        assert result["result"] == "matched"

        cached = (await client.post(f"/projects/{project_id}/compare", json={"force": False})).json()
        assert cached["cached"] is True
        forced = (await client.post(f"/projects/{project_id}/compare", json={"force": True})).json()
        assert forced["cached"] is False

    async def test_failed_comparison(self, client, project, orchestrator, stub, schedule_reply):
        project_id = await self._extracted(client, project, orchestrator, stub, schedule_reply)
        stub.script(ExtractionKind.COMPARISON, *[
            ModelClientError("stub", "OVERLOADED", "provider overloaded", retryable=True)
        ] * 3)
        response = await client.post(f"/projects/{project_id}/compare")
        assert response.status_code == 502
        assert response.json()["detail"] == "provider overloaded"

    async def test_unknown_project(self, client):
        assert (await client.post(f"/projects/{uuid.uuid4()}/compare")).status_code == 404


class FakeRequest:
    """Reports a disconnect after the given number of checks."""

    def __init__(self, connected_checks: int):
        self.remaining = connected_checks

    async def is_disconnected(self) -> bool:
        self.remaining -= 1
        return self.remaining < 0


class TestStream:

    async def test_unknown_project(self, client):
        assert (await client.get(f"/projects/{uuid.uuid4()}/stream")).status_code == 404

    async def test_initial_snapshot_then_heartbeat(self, client, project, publisher):
        project_id, _ = await project(schedules=[("finishes.pdf", b"%PDF")])
        frames = [
            frame async for frame in project_events(FakeRequest(1), uuid.UUID(project_id), publisher, 0.01)
        ]
        assert frames[0].startswith("event: project-update\ndata: ")
        assert '"originalName": "finishes.pdf"' in frames[0]
        assert frames[1:] == [": heartbeat\n\n"]
        assert publisher.subscriber_count(uuid.UUID(project_id)) == 0

    async def test_change_picked_up_by_polling(self, db, client, project, publisher):
        project_id, _ = await project(schedules=[("finishes.pdf", b"%PDF")])
        pid = uuid.UUID(project_id)
        events = project_events(FakeRequest(2), pid, publisher, 0.01)

        first = await events.__anext__()
        assert first.startswith("event: project-update")

        async with db() as session:
            await append_log(session, pid, "Something happened.")
            await session.commit()

        second = await events.__anext__()
        assert second.startswith("event: project-update")
        assert "Something happened." in second
        third = await events.__anext__()
        assert third == ": heartbeat\n\n"
        with pytest.raises(StopAsyncIteration):
            await events.__anext__()

    async def test_published_snapshot_forwarded(self, client, project, publisher, orchestrator, stub, schedule_reply):
        stub.script(ExtractionKind.SCHEDULE, schedule_reply)
        project_id, _ = await project(schedules=[("finishes.pdf", b"%PDF")])
        pid = uuid.UUID(project_id)
        events = project_events(FakeRequest(1), pid, publisher, 5)
        await events.__anext__()

        await orchestrator.start(pid, "key-1")
        update = await events.__anext__()
        assert update.startswith("event: project-update")
        assert "Extraction started for 1 file(s)." in update
        await events.aclose()
        assert publisher.subscriber_count(pid) == 0


class TestHealth:

    async def test_health(self, client):
        body = (await client.get("/health")).json()
        assert body["status"] == "healthy"
        assert body["model_provider"] == "stub"

    async def test_ready(self, client):
        assert (await client.get("/health/ready")).json() == {"ready": True, "database": True, "model": True}
