"""
Health check endpoints.
/health always returns 200 so platform healthchecks pass while the
database is still coming up; /health/ready reports real readiness.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import text

from estimateai.config import settings
from estimateai.dependencies import get_model_client
from estimateai.engines.base import ModelClient
from estimateai.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _database_ok() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except Exception as e:
        return False, str(e)[:200]


@router.get("/health")
async def health_check():
    """Liveness plus a best-effort database check."""
    db_ok, db_error = await _database_ok()

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "dispatch_mode": settings.DISPATCH_MODE,
        "model_provider": settings.MODEL_PROVIDER,
        "database": "connected" if db_ok else "unreachable",
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check(client: ModelClient = Depends(get_model_client)):
    """Ready only when the database and the model provider both respond."""
    db_ok, _ = await _database_ok()
    model_ok = await client.health_check() if db_ok else False
    return {"ready": db_ok and model_ok, "database": db_ok, "model": model_ok}
