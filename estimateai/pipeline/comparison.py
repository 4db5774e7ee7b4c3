"""
BOQ vs drawing/schedule comparison.

1. Build the comparable BOQ set and the drawing detail set
2. Fingerprint the inputs; serve a cached run unless forced
3. Chunk BOQ groups and compare chunks in parallel through the retry helper
4. Merge in chunk order, compute stats, persist keyed by fingerprint

One failed chunk fails the run; successful chunks are still logged and
kept on the persisted run.
"""

import asyncio
import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from estimateai.config import settings
from estimateai.engines.base import ExtractionKind, ModelClient
from estimateai.errors import ComparisonFailedError, NotFoundError
from estimateai.jobs.logs import append_log
from estimateai.models.database import async_session_factory
from estimateai.models.enums import ComparisonStatus, ComparisonVerdict, ItemSource, LogLevel
from estimateai.models.tables import ComparisonRun, Project, ProjectItem, utcnow
from estimateai.observability.metrics import comparison_chunks_total, comparison_runs_total
from estimateai.pipeline import prompts
from estimateai.pipeline.chunker import chunk
from estimateai.pipeline.items import PLACEHOLDER_TEXT, collect_schedule_codes, schedule_code_of
from estimateai.pipeline.orchestrator import error_message
from estimateai.pipeline.retry import BackoffPolicy, call_with_retry
from estimateai.streaming.publisher import ProgressPublisher
from estimateai.streaming.snapshot import build_snapshot

logger = structlog.get_logger(__name__)

PLACEHOLDER_CODES = {"", "ITEM", "NOTE"}

NO_DETAILS_REASON = "No drawing details reference this item; nothing contradicts the BOQ."
NO_VERDICT_REASON = "Model returned no verdict for this item."

_UPSERT_BY_DIALECT = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


@dataclass
class ComparisonOutcome:
    results: list[dict[str, str]]
    stats: dict[str, int]
    cached: bool
    status: str
    error: Optional[str] = None


@dataclass
class _ChunkResult:
    index: int
    codes: list[str]
    verdicts: list[dict[str, str]] = field(default_factory=list)
    error: Optional[BaseException] = None


def is_placeholder_boq(item: ProjectItem) -> bool:
    code = (item.item_code or "").strip().upper()
    description = (item.description or "").strip()
    return code in PLACEHOLDER_CODES or description in ("", PLACEHOLDER_TEXT)


def _code_pattern(code: str) -> re.Pattern:
    return re.compile(rf"(?<![A-Za-z0-9]){re.escape(code)}(?![A-Za-z0-9])", re.IGNORECASE)


def _normalize_verdict(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text.startswith("mismatch"):
        return ComparisonVerdict.MISMATCHED.value
    return ComparisonVerdict.MATCHED.value


def _item_content(item: ProjectItem) -> list:
    return [
        item.source,
        item.item_code,
        item.description,
        item.notes,
        item.thickness,
        sorted((item.fields_json or {}).items()),
    ]


def comparison_fingerprint(items: list[ProjectItem]) -> str:
    """SHA-256 over the sorted content of every item feeding the comparison."""
    content = sorted(json.dumps(_item_content(i), sort_keys=True, default=str) for i in items)
    return hashlib.sha256("\n".join(content).encode("utf-8")).hexdigest()


class ComparisonEngine:
    def __init__(
        self,
        client: ModelClient,
        session_factory: async_sessionmaker = async_session_factory,
        publisher: Optional[ProgressPublisher] = None,
        policy: Optional[BackoffPolicy] = None,
        chunk_size: Optional[int] = None,
        max_parallel: Optional[int] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.publisher = publisher
        self.policy = policy or BackoffPolicy.from_settings()
        self.chunk_size = chunk_size or settings.COMPARE_CHUNK_SIZE
        self.max_parallel = max_parallel or settings.COMPARE_MAX_PARALLEL

    # ── Input sets ───────────────────────────────────────────
    @staticmethod
    def build_boq_groups(boq_items: list[ProjectItem], schedule_codes: list[str]) -> dict[str, list[dict]]:
        """Comparable BOQ rows grouped by the schedule code they reference."""
        by_upper = {c.upper(): c for c in schedule_codes}
        patterns = [(c, _code_pattern(c)) for c in schedule_codes]
        groups: dict[str, list[dict]] = {}
        for item in boq_items:
            if is_placeholder_boq(item):
                continue
            key = by_upper.get(item.item_code.strip().upper())
            if key is None:
                haystack = f"{item.description} {item.notes}"
                key = next((c for c, p in patterns if p.search(haystack)), item.item_code.strip())
            fields = item.fields_json or {}
            groups.setdefault(key, []).append(
                {
                    "description": item.description,
                    "qty": fields.get("qty", ""),
                    "unit": fields.get("unit", ""),
                    "boq_item_code": item.item_code,
                }
            )
        return groups

    @staticmethod
    def build_drawing_groups(cad_items: list[ProjectItem], schedule_codes: list[str]) -> dict[str, list[str]]:
        """Drawing details keyed by schedule code; codes outside the schedule are dropped."""
        by_upper = {c.upper(): c for c in schedule_codes}
        groups: dict[str, list[str]] = {}
        for item in cad_items:
            code = by_upper.get(item.item_code.strip().upper())
            if code is None:
                continue
            parts = [item.description, item.notes]
            if item.thickness is not None:
                parts.append(f"thickness {item.thickness:g} mm")
            detail = "; ".join(p for p in parts if p)
            if detail:
                groups.setdefault(code, []).append(detail)
        return groups

    # ── Entry point ──────────────────────────────────────────
    async def compare(self, project_id: uuid.UUID, force: bool = False) -> ComparisonOutcome:
        async with self.session_factory() as session:
            if await session.get(Project, project_id) is None:
                raise NotFoundError(f"Project {project_id} not found")
            items = list(
                (
                    await session.execute(
                        select(ProjectItem)
                        .where(ProjectItem.project_id == project_id)
                        .order_by(ProjectItem.created_at, ProjectItem.position)
                    )
                ).scalars().all()
            )

            schedule_items = [i for i in items if i.source == ItemSource.SCHEDULE.value]
            boq_items = [i for i in items if i.source == ItemSource.BOQ.value]
            cad_items = [i for i in items if i.source == ItemSource.CAD.value]
            schedule_codes = collect_schedule_codes(
                [schedule_code_of(i.fields_json) for i in schedule_items],
                settings.SCHEDULE_CODE_MAX_LENGTH,
            )
            fingerprint = comparison_fingerprint(items)

            if not force:
                cached = (
                    await session.execute(
                        select(ComparisonRun)
                        .where(ComparisonRun.project_id == project_id)
                        .where(ComparisonRun.fingerprint == fingerprint)
                        .where(ComparisonRun.status == ComparisonStatus.DONE.value)
                    )
                ).scalars().first()
                if cached is not None:
                    comparison_runs_total.labels(outcome="cached").inc()
                    logger.info("comparison_cache_hit", project_id=str(project_id), fingerprint=fingerprint)
                    return ComparisonOutcome(
                        results=list(cached.results_json or []),
                        stats=dict(cached.stats_json or {}),
                        cached=True,
                        status=cached.status,
                    )

        boq_groups = self.build_boq_groups(boq_items, schedule_codes)
        drawing_groups = self.build_drawing_groups(cad_items, schedule_codes)
        comparable_items = sum(len(entries) for entries in boq_groups.values())
        chunks = chunk(list(boq_groups), self.chunk_size)

        await self._log(
            project_id,
            f"Comparison started: {comparable_items} comparable BOQ item(s) in {len(chunks)} chunk(s).",
        )
        chunk_results = await self._run_chunks(project_id, chunks, boq_groups, drawing_groups)

        results: list[dict[str, str]] = []
        first_error: Optional[str] = None
        for outcome in chunk_results:
            label = f"{outcome.index + 1}/{len(chunks)}"
            if outcome.error is not None:
                message = error_message(outcome.error)
                first_error = first_error or message
                comparison_chunks_total.labels(outcome="failed").inc()
                await self._log(
                    project_id, f"Comparison chunk {label} failed: {message}", level=LogLevel.ERROR
                )
                continue
            merged = self._merge_chunk(outcome, drawing_groups)
            results.extend(merged)
            comparison_chunks_total.labels(outcome="done").inc()
            await self._log(
                project_id,
                f"Comparison chunk {label} completed: "
                + ", ".join(f"{r['item_code']} {r['result']}" for r in merged),
            )

        matched = sum(1 for r in results if r["result"] == ComparisonVerdict.MATCHED.value)
        stats = {
            "comparableItems": comparable_items,
            "scheduleCodes": len(schedule_codes),
            "boqItems": len(boq_items),
            "drawingItems": sum(len(d) for d in drawing_groups.values()),
            "chunks": len(chunks),
            "matched": matched,
            "mismatched": len(results) - matched,
        }
        status = ComparisonStatus.FAILED if first_error else ComparisonStatus.DONE
        await self._persist(project_id, fingerprint, status, results, stats, first_error)

        outcome = ComparisonOutcome(
            results=results, stats=stats, cached=False, status=status.value, error=first_error
        )
        if first_error:
            comparison_runs_total.labels(outcome="failed").inc()
            await self._log(project_id, f"Comparison failed: {first_error}", level=LogLevel.ERROR)
            logger.error("comparison_failed", project_id=str(project_id), error=first_error)
            raise ComparisonFailedError(first_error, run=outcome)

        comparison_runs_total.labels(outcome="done").inc()
        await self._log(
            project_id,
            f"Comparison completed: {stats['matched']} matched, {stats['mismatched']} mismatched.",
        )
        logger.info("comparison_done", project_id=str(project_id), **stats)
        return outcome

    async def _run_chunks(
        self,
        project_id: uuid.UUID,
        chunks: list[list[str]],
        boq_groups: dict[str, list[dict]],
        drawing_groups: dict[str, list[str]],
    ) -> list[_ChunkResult]:
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def _one(index: int, codes: list[str]) -> _ChunkResult:
            prompt = prompts.comparison_prompt(
                [{"item_code": c, "entries": boq_groups[c]} for c in codes],
                [{"item_code": c, "details": drawing_groups[c]} for c in codes if c in drawing_groups],
            )
            async with semaphore:
                try:
                    output = await call_with_retry(
                        lambda: self.client.extract(None, prompt, ExtractionKind.COMPARISON),
                        self.client.classify,
                        self.policy,
                        label="compare",
                    )
                except Exception as e:
                    logger.warning(
                        "comparison_chunk_failed",
                        project_id=str(project_id),
                        chunk=index + 1,
                        error=error_message(e),
                    )
                    return _ChunkResult(index=index, codes=codes, error=e)
            return _ChunkResult(index=index, codes=codes, verdicts=output.items)

        # gather preserves dispatch order regardless of completion order
        return await asyncio.gather(*(_one(i, codes) for i, codes in enumerate(chunks)))

    @staticmethod
    def _merge_chunk(outcome: _ChunkResult, drawing_groups: dict[str, list[str]]) -> list[dict[str, str]]:
        verdicts = {}
        for row in outcome.verdicts:
            code = str(row.get("item_code") or "").strip().upper()
            if code and code not in verdicts:
                verdicts[code] = row

        merged = []
        for code in outcome.codes:
            row = verdicts.get(code.upper())
            if row is not None:
                merged.append(
                    {
                        "item_code": code,
                        "result": _normalize_verdict(row.get("result")),
                        "reason": str(row.get("reason") or "").strip(),
                    }
                )
            elif code not in drawing_groups:
                merged.append(
                    {"item_code": code, "result": ComparisonVerdict.MATCHED.value, "reason": NO_DETAILS_REASON}
                )
            else:
                merged.append(
                    {"item_code": code, "result": ComparisonVerdict.MISMATCHED.value, "reason": NO_VERDICT_REASON}
                )
        return merged

    async def _persist(
        self,
        project_id: uuid.UUID,
        fingerprint: str,
        status: ComparisonStatus,
        results: list[dict],
        stats: dict,
        error: Optional[str],
    ) -> None:
        """Upsert on (project, fingerprint); concurrent runs of the same inputs both land on one row."""
        values = {
            "status": status.value,
            "results_json": results,
            "stats_json": stats,
            "error_message": error,
        }
        async with self.session_factory() as session:
            insert = _UPSERT_BY_DIALECT[session.bind.dialect.name]
            statement = insert(ComparisonRun).values(project_id=project_id, fingerprint=fingerprint, **values)
            statement = statement.on_conflict_do_update(
                index_elements=["project_id", "fingerprint"],
                set_={**values, "updated_at": utcnow()},
            )
            await session.execute(statement)
            await session.commit()

    async def _log(self, project_id: uuid.UUID, message: str, level: LogLevel = LogLevel.INFO) -> None:
        async with self.session_factory() as session:
            await append_log(session, project_id, message, level=level)
            await session.commit()
        if self.publisher is not None and self.publisher.subscriber_count(project_id):
            async with self.session_factory() as session:
                snapshot = await build_snapshot(session, project_id)
            self.publisher.publish(project_id, snapshot)
