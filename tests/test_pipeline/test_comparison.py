"""
Tests for the BOQ comparison engine.
"""

import asyncio
import uuid

import pytest
from sqlalchemy import select

from estimateai.engines.base import ExtractionKind, ModelClientError
from estimateai.errors import ComparisonFailedError, NotFoundError
from estimateai.jobs.logs import list_logs
from estimateai.models.enums import ComparisonStatus, ItemSource, LogLevel
from estimateai.models.tables import ComparisonRun, ProjectItem
from estimateai.pipeline.comparison import (
    NO_DETAILS_REASON,
    NO_VERDICT_REASON,
    ComparisonEngine,
    comparison_fingerprint,
    is_placeholder_boq,
)

SCHEDULE_ROWS = [
    {"item_code": "FL-01", "fields": {"CODE": "FL-01"}},
    {"item_code": "WL-02", "fields": {"CODE": "WL-02"}},
]

BOQ_ROWS = [
    {"item_code": "1.1", "description": "Porcelain tile FL-01", "fields": {"qty": "120", "unit": "m2"}},
    {"item_code": "1.2", "description": "Partition type WL-02", "fields": {"qty": "40", "unit": "m2"}},
    {"item_code": "ITEM", "description": "Preliminaries"},
    {"item_code": "1.4", "description": "N/A"},
]


def boq(code, description="", notes="", **fields):
    return ProjectItem(source=ItemSource.BOQ.value, item_code=code, description=description, notes=notes,
                       fields_json=fields)


def cad(code, description="", notes="", thickness=None):
    return ProjectItem(source=ItemSource.CAD.value, item_code=code, description=description, notes=notes,
                       thickness=thickness, fields_json={})


@pytest.fixture
def seeded_project(make_project, seed_items):
    async def _seed(boq_rows=BOQ_ROWS, cad_rows=()):
        project_id, (schedule_id, boq_id, drawing_id) = await make_project([
            ("schedule", "finishes.pdf", b"%PDF"),
            ("boq", "bill.csv", b"a,b"),
            ("drawing", "plan.pdf", b"%PDF"),
        ])
        await seed_items(project_id, schedule_id, ItemSource.SCHEDULE, SCHEDULE_ROWS)
        await seed_items(project_id, boq_id, ItemSource.BOQ, list(boq_rows))
        await seed_items(project_id, drawing_id, ItemSource.CAD, list(cad_rows))
        return project_id, boq_id

    return _seed


async def log_entries(db, project_id):
    async with db() as session:
        return list(reversed(await list_logs(session, project_id, limit=200)))


class TestPlaceholders:

    @pytest.mark.parametrize("code,description,expected", [
        ("1.1", "Porcelain tile", False),
        ("ITEM", "Porcelain tile", True),
        ("note", "General", True),
        ("", "Porcelain tile", True),
        ("1.1", "N/A", True),
        ("1.1", "  ", True),
    ])
    def test_is_placeholder_boq(self, code, description, expected):
        assert is_placeholder_boq(boq(code, description)) is expected


class TestBuildGroups:

    def test_grouped_by_referenced_schedule_code(self):
        groups = ComparisonEngine.build_boq_groups(
            [
                boq("1.1", "Porcelain tile fl-01 to lobby", qty="120", unit="m2"),
                boq("1.2", "Skirting", notes="to match FL-01"),
                boq("WL-02", "Partition"),
                boq("9.9", "Sundries"),
            ],
            ["FL-01", "WL-02"],
        )
        assert list(groups) == ["FL-01", "WL-02", "9.9"]
        assert groups["FL-01"][0] == {
            "description": "Porcelain tile fl-01 to lobby", "qty": "120", "unit": "m2", "boq_item_code": "1.1"
        }
        assert len(groups["FL-01"]) == 2

    def test_code_must_be_whole_token(self):
        groups = ComparisonEngine.build_boq_groups([boq("1.1", "Tile FL-011")], ["FL-01"])
        assert list(groups) == ["1.1"]

    def test_placeholders_excluded(self):
        groups = ComparisonEngine.build_boq_groups([boq("ITEM", "Tile FL-01"), boq("1.2", "N/A")], ["FL-01"])
        assert groups == {}

    def test_drawing_codes_outside_schedule_dropped(self):
        groups = ComparisonEngine.build_drawing_groups(
            [
                cad("FL-01", "Tile to lobby", thickness=10.0),
                cad("XX-99", "Unscheduled finish"),
                cad("NOTE", "All dimensions in mm"),
                cad("wl-02", "", "Double board"),
            ],
            ["FL-01", "WL-02"],
        )
        assert groups == {
            "FL-01": ["Tile to lobby; thickness 10 mm"],
            "WL-02": ["Double board"],
        }


class TestFingerprint:

    def test_independent_of_order(self):
        a, b = boq("1.1", "Tile"), boq("1.2", "Paint")
        assert comparison_fingerprint([a, b]) == comparison_fingerprint([b, a])

    def test_changes_with_content(self):
        before = comparison_fingerprint([boq("1.1", "Tile", qty="10")])
        after = comparison_fingerprint([boq("1.1", "Tile", qty="12")])
        assert before != after


class TestCompare:

    async def test_verdicts_and_stats(self, db, stub, comparison_engine, seeded_project):
        project_id, _ = await seeded_project(cad_rows=[
            {"item_code": "FL-01", "description": "Vinyl sheet to lobby"},
            {"item_code": "WL-02", "description": "Single board partition"},
            {"item_code": "XX-99", "description": "Not in schedule"},
        ])
        stub.script(ExtractionKind.COMPARISON, {
            "results": [
                {"item_code": "FL-01", "result": "Mismatched", "reason": "Drawing shows **vinyl**, BOQ says tile."},
            ]
        })

        outcome = await comparison_engine.compare(project_id)

        assert outcome.cached is False
        assert outcome.status == ComparisonStatus.DONE.value
        assert outcome.results == [
            {"item_code": "FL-01", "result": "mismatched", "reason": "Drawing shows **vinyl**, BOQ says tile."},
            {"item_code": "WL-02", "result": "mismatched", "reason": NO_VERDICT_REASON},
        ]
        assert outcome.stats == {
            "comparableItems": 2,
            "scheduleCodes": 2,
            "boqItems": 4,
            "drawingItems": 2,
            "chunks": 1,
            "matched": 0,
            "mismatched": 2,
        }
        (call,) = stub.calls_of(ExtractionKind.COMPARISON)
        assert "Not in schedule" not in call.prompt
        assert "Vinyl sheet to lobby" in call.prompt
        assert call.artifact is None

    async def test_groups_without_details_match(self, stub, comparison_engine, seeded_project):
        project_id, _ = await seeded_project()
        outcome = await comparison_engine.compare(project_id)
        assert [r["result"] for r in outcome.results] == ["matched", "matched"]
        assert all(r["reason"] == NO_DETAILS_REASON for r in outcome.results)

    async def test_cached_until_inputs_change(self, db, stub, comparison_engine, seeded_project, seed_items):
        project_id, boq_id = await seeded_project()
        first = await comparison_engine.compare(project_id)
        second = await comparison_engine.compare(project_id)

        assert second.cached is True
        assert second.results == first.results
        assert second.stats == first.stats
        assert len(stub.calls_of(ExtractionKind.COMPARISON)) == 1

        await seed_items(project_id, boq_id, ItemSource.BOQ, [{"item_code": "1.5", "description": "Paint WL-02"}])
        third = await comparison_engine.compare(project_id)
        assert third.cached is False
        assert len(stub.calls_of(ExtractionKind.COMPARISON)) == 2

    async def test_force_bypasses_cache(self, db, stub, comparison_engine, seeded_project):
        project_id, _ = await seeded_project()
        await comparison_engine.compare(project_id)
        forced = await comparison_engine.compare(project_id, force=True)
        assert forced.cached is False
        assert len(stub.calls_of(ExtractionKind.COMPARISON)) == 2

        async with db() as session:
            runs = (await session.execute(select(ComparisonRun))).scalars().all()
        assert len(runs) == 1

    async def test_concurrent_identical_runs_share_one_row(self, db, stub, comparison_engine, seeded_project):
        project_id, _ = await seeded_project()
        stub.latency = 0.05

        first, second = await asyncio.gather(
            comparison_engine.compare(project_id),
            comparison_engine.compare(project_id),
        )

        assert first.status == second.status == ComparisonStatus.DONE.value
        assert first.results == second.results
        assert len(stub.calls_of(ExtractionKind.COMPARISON)) == 2
        async with db() as session:
            runs = (await session.execute(select(ComparisonRun))).scalars().all()
        assert len(runs) == 1
        assert runs[0].status == ComparisonStatus.DONE.value
        assert runs[0].stats_json == first.stats

    async def test_nothing_to_compare(self, stub, comparison_engine, make_project):
        project_id, _ = await make_project([])
        outcome = await comparison_engine.compare(project_id)
        assert outcome.results == []
        assert outcome.stats["chunks"] == 0
        assert stub.calls == []

    async def test_unknown_project(self, comparison_engine, db):
        with pytest.raises(NotFoundError):
            await comparison_engine.compare(uuid.uuid4())


class TestScenarioC:
    """25 groups in chunks of 10; the second chunk exhausts its retries."""

    @pytest.fixture
    async def twenty_five_groups(self, seeded_project):
        rows = [{"item_code": f"B-{i:02d}", "description": f"Line item {i}"} for i in range(1, 26)]
        project_id, _ = await seeded_project(boq_rows=rows)
        return project_id

    async def test_failed_chunk_fails_run(self, db, stub, comparison_engine, twenty_five_groups):
        project_id = twenty_five_groups

        def reply(prompt, artifact):
            if '"B-11"' in prompt:
                raise ModelClientError("stub", "OVERLOADED", "provider overloaded", retryable=True)
            return {"results": []}

        stub.on(ExtractionKind.COMPARISON, reply)

        with pytest.raises(ComparisonFailedError) as exc:
            await comparison_engine.compare(project_id)

        run = exc.value.run
        assert run.status == ComparisonStatus.FAILED.value
        assert run.stats["chunks"] == 3
        assert [r["item_code"] for r in run.results] == (
            [f"B-{i:02d}" for i in range(1, 11)] + [f"B-{i:02d}" for i in range(21, 26)]
        )
        assert len(stub.calls_of(ExtractionKind.COMPARISON)) == 5

        entries = await log_entries(db, project_id)
        chunk_logs = [e for e in entries if e.message.startswith("Comparison chunk")]
        assert [e.message.split(":")[0] for e in chunk_logs] == [
            "Comparison chunk 1/3 completed",
            "Comparison chunk 2/3 failed",
            "Comparison chunk 3/3 completed",
        ]
        assert "B-01 matched" in chunk_logs[0].message
        assert "B-25 matched" in chunk_logs[2].message
        assert chunk_logs[1].level == LogLevel.ERROR.value
        assert entries[-1].message == "Comparison failed: provider overloaded"

    async def test_failed_run_is_not_served_from_cache(self, stub, comparison_engine, twenty_five_groups):
        project_id = twenty_five_groups
        healthy = True

        def reply(prompt, artifact):
            if not healthy:
                raise ModelClientError("stub", "OVERLOADED", "overloaded", retryable=True)
            return {"results": []}

        stub.on(ExtractionKind.COMPARISON, reply)
        healthy = False
        with pytest.raises(ComparisonFailedError):
            await comparison_engine.compare(project_id)

        healthy = True
        outcome = await comparison_engine.compare(project_id)
        assert outcome.cached is False
        assert outcome.status == ComparisonStatus.DONE.value
        assert len(outcome.results) == 25
