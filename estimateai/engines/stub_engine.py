"""
Stub model client for tests and local development.
Replies come from per-kind scripts or handlers, so pipeline plumbing
can be exercised end-to-end without a provider account.
"""

import asyncio
import json
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

from estimateai.engines.base import (
    ArtifactRef,
    ExtractionKind,
    ModelClient,
    ModelOutput,
    result_key,
)
from estimateai.pipeline.output_parser import parse_items

# A scripted outcome: raw text, a JSON-able payload, or an exception to raise.
Outcome = Any
Handler = Callable[[str, Optional[ArtifactRef]], Outcome]


@dataclass
class StubCall:
    kind: ExtractionKind
    prompt: str
    artifact: Optional[ArtifactRef]


class StubEngine(ModelClient):
    """Fake adapter with scripted replies and a call journal."""

    def __init__(self):
        self._scripts: dict[ExtractionKind, deque] = defaultdict(deque)
        self._handlers: dict[ExtractionKind, Handler] = {}
        self.upload_failures: deque = deque()
        self.uploads: list[ArtifactRef] = []
        self.calls: list[StubCall] = []
        self.deleted: list[ArtifactRef] = []
        # Seconds each extract() call takes before answering.
        self.latency: float = 0.0

    @property
    def engine_name(self) -> str:
        return "stub"

    def script(self, kind: ExtractionKind, *outcomes: Outcome) -> "StubEngine":
        """Queue outcomes consumed one per extract() call of this kind."""
        self._scripts[kind].extend(outcomes)
        return self

    def on(self, kind: ExtractionKind, handler: Handler) -> "StubEngine":
        """Answer calls of this kind (once scripts are exhausted) with handler(prompt, artifact)."""
        self._handlers[kind] = handler
        return self

    def calls_of(self, kind: ExtractionKind) -> list[StubCall]:
        return [c for c in self.calls if c.kind == kind]

    async def upload(self, path: str, file_name: str, mime_type: Optional[str] = None) -> ArtifactRef:
        if self.upload_failures:
            raise self.upload_failures.popleft()
        ref = ArtifactRef(
            provider=self.engine_name,
            artifact_id=f"stub-{uuid.uuid4().hex[:12]}",
            file_name=file_name,
            mime_type=mime_type,
        )
        self.uploads.append(ref)
        return ref

    async def extract(
        self,
        artifact: Optional[ArtifactRef],
        prompt: str,
        kind: ExtractionKind,
    ) -> ModelOutput:
        self.calls.append(StubCall(kind=kind, prompt=prompt, artifact=artifact))
        if self.latency:
            await asyncio.sleep(self.latency)

        if self._scripts[kind]:
            outcome = self._scripts[kind].popleft()
        elif kind in self._handlers:
            outcome = self._handlers[kind](prompt, artifact)
        else:
            outcome = {result_key(kind): []}

        if isinstance(outcome, BaseException):
            raise outcome
        raw = outcome if isinstance(outcome, str) else json.dumps(outcome)
        return ModelOutput(items=parse_items(raw, result_key(kind)), raw_text=raw)

    async def delete(self, artifact: ArtifactRef) -> None:
        self.deleted.append(artifact)
