"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from estimateai.api.health import router as health_router
from estimateai.api.projects import router as projects_router
from estimateai.api.extractions import router as extractions_router
from estimateai.api.comparisons import router as comparisons_router
from estimateai.api.stream import router as stream_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(projects_router)
api_router.include_router(extractions_router)
api_router.include_router(comparisons_router)
api_router.include_router(stream_router)
