"""
Abstract base class for model clients.
Every provider adapter exposes the same four capabilities:
upload, extract, delete, classify.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ExtractionKind(str, Enum):
    """What a model call is asked to produce."""
    SCHEDULE = "schedule"
    DRAWING = "drawing"
    BOQ = "boq"
    COMPARISON = "comparison"


def result_key(kind: "ExtractionKind") -> str:
    """JSON key holding the record list in a model reply of this kind."""
    return "results" if kind == ExtractionKind.COMPARISON else "items"


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class ArtifactRef:
    """Handle to a document uploaded to provider storage."""
    provider: str
    artifact_id: str
    file_name: str
    mime_type: Optional[str] = None


@dataclass
class ModelOutput:
    items: list[dict[str, Any]] = field(default_factory=list)
    raw_text: str = ""


# Lower-cased substrings that mark a provider or transport failure as transient.
RETRYABLE_MARKERS = (
    "fetch failed",
    "network",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket",
    "aborted",
    "timeout",
    "timed out",
    "rate_limit",
    "rate limit",
    "overloaded",
    "connection reset",
    "temporarily unavailable",
)


def classify_error(error: BaseException) -> ErrorClass:
    """Default classification: explicit flag first, then exception type, then message."""
    if isinstance(error, ModelClientError) and error.retryable is not None:
        return ErrorClass.RETRYABLE if error.retryable else ErrorClass.FATAL
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClass.RETRYABLE
    message = str(error).lower()
    if any(marker in message for marker in RETRYABLE_MARKERS):
        return ErrorClass.RETRYABLE
    return ErrorClass.FATAL


class ModelClient(ABC):
    """
    Uniform capability over AI providers.

    Implementations must:
    1. Upload a local document and return an ArtifactRef
    2. Run a prompt against an artifact (or text only) and return parsed items
       plus the raw provider text; malformed JSON yields an empty item list
    3. Delete uploaded artifacts without ever raising
    4. Classify errors as retryable or fatal
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Unique identifier: 'openai', 'stub'"""
        ...

    @abstractmethod
    async def upload(self, path: str, file_name: str, mime_type: Optional[str] = None) -> ArtifactRef:
        ...

    @abstractmethod
    async def extract(
        self,
        artifact: Optional[ArtifactRef],
        prompt: str,
        kind: ExtractionKind,
    ) -> ModelOutput:
        ...

    @abstractmethod
    async def delete(self, artifact: ArtifactRef) -> None:
        """Best-effort release of provider storage. Never raises."""
        ...

    def classify(self, error: BaseException) -> ErrorClass:
        return classify_error(error)

    async def health_check(self) -> bool:
        return True


class ModelClientError(Exception):
    """Raised when a model provider call fails."""

    def __init__(
        self,
        engine_name: str,
        error_code: str,
        message: str,
        retryable: Optional[bool] = None,
    ):
        self.engine_name = engine_name
        self.error_code = error_code
        self.message = message
        self.retryable = retryable
        super().__init__(f"[{engine_name}] {error_code}: {message}")
