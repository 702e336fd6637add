"""
Health check endpoints.
"""

import os

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings
from database import engine
from multimodal.adapter import AnalysisAdapter, get_analysis_adapter
from multimodal.models import PROVIDER_KINDS

router = APIRouter()


def _redis_required() -> bool:
    return settings.ANALYSIS_EXECUTION_MODE == "queue" or settings.ANALYSIS_CACHE_ENABLED


def _provider_coverage(adapter: AnalysisAdapter) -> dict:
    return {kind.value: [provider.name for provider in adapter.providers_for(kind)] for kind in PROVIDER_KINDS}


@router.get("/health")
async def health_check(adapter: AnalysisAdapter = Depends(get_analysis_adapter)):
    """
    Health check endpoint.
    Reports database, Redis, storage and per-kind provider coverage.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "storage": "unknown",
        "execution_mode": settings.ANALYSIS_EXECUTION_MODE,
        "providers": _provider_coverage(adapter),
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if _redis_required():
            health_status["status"] = "degraded"

    storage_dir = settings.ASSET_STORAGE_DIR
    if os.path.isdir(storage_dir) and os.access(storage_dir, os.W_OK):
        health_status["storage"] = "up"
    elif not os.path.exists(storage_dir):
        health_status["storage"] = "not created yet"
    else:
        health_status["storage"] = "not writable"
        health_status["status"] = "degraded"

    if not all(health_status["providers"].values()):
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(adapter: AnalysisAdapter = Depends(get_analysis_adapter)):
    """Ready once every analysis kind has at least one provider."""
    missing = [kind for kind, names in _provider_coverage(adapter).items() if not names]
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing_providers": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
