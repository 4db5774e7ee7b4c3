"""
FastAPI dependency injection.
Provides DB sessions, the artifact store, the model client, the
orchestrator, the comparison engine, the progress publisher and API key
validation.
"""

from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from estimateai.config import settings
from estimateai.engines.base import ModelClient
from estimateai.models.database import get_session
from estimateai.pipeline.comparison import ComparisonEngine
from estimateai.pipeline.orchestrator import ExtractionOrchestrator
from estimateai.storage.artifact_store import ArtifactStore
from estimateai.streaming.publisher import ProgressPublisher, get_publisher
from estimateai.worker.pool import ExtractionWorkerPool


# ── Singleton instances ──────────────────────────────────────
_artifact_store: Optional[ArtifactStore] = None
_model_client: Optional[ModelClient] = None
_orchestrator: Optional[ExtractionOrchestrator] = None
_comparison_engine: Optional[ComparisonEngine] = None
_worker_pool: Optional[ExtractionWorkerPool] = None


def build_model_client() -> ModelClient:
    """Construct the configured provider adapter."""
    if settings.MODEL_PROVIDER == "stub":
        from estimateai.engines.stub_engine import StubEngine
        return StubEngine()
    from estimateai.engines.openai_engine import OpenAIEngine
    return OpenAIEngine()


def get_artifact_store() -> ArtifactStore:
    """Get or create the artifact store singleton."""
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore()
    return _artifact_store


def get_model_client() -> ModelClient:
    global _model_client
    if _model_client is None:
        _model_client = build_model_client()
    return _model_client


def get_worker_pool() -> ExtractionWorkerPool:
    global _worker_pool
    if _worker_pool is None:
        _worker_pool = ExtractionWorkerPool(get_orchestrator())
    return _worker_pool


def _dispatcher():
    if settings.DISPATCH_MODE == "rq":
        from estimateai.worker.jobs import enqueue_many
        return enqueue_many
    return lambda job_ids: get_worker_pool().wake(job_ids)


def get_orchestrator() -> ExtractionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ExtractionOrchestrator(
            get_model_client(),
            artifact_store=get_artifact_store(),
            publisher=get_publisher(),
            dispatcher=_dispatcher(),
        )
    return _orchestrator


def get_comparison_engine() -> ComparisonEngine:
    global _comparison_engine
    if _comparison_engine is None:
        _comparison_engine = ComparisonEngine(get_model_client(), publisher=get_publisher())
    return _comparison_engine


def get_progress_publisher() -> ProgressPublisher:
    return get_publisher()


def reset_singletons() -> None:
    """Drop cached instances so the next request rebuilds them."""
    global _artifact_store, _model_client, _orchestrator, _comparison_engine, _worker_pool
    _artifact_store = None
    _model_client = None
    _orchestrator = None
    _comparison_engine = None
    _worker_pool = None


async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
