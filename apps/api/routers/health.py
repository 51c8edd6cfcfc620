"""
Health check endpoints.
"""

import logging
import os

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


def _storage_ready() -> bool:
    root = settings.STORAGE_ROOT
    if os.path.isdir(root):
        return os.access(root, os.W_OK)
    parent = os.path.dirname(os.path.abspath(root))
    return os.path.isdir(parent) and os.access(parent, os.W_OK)


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "storage": "unknown",
    }

    # Check database connection
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs rate limiting, which falls back to local counters
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"

    if _storage_ready():
        health_status["storage"] = "up"
    else:
        health_status["storage"] = "down: storage root not writable"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not _storage_ready():
        missing.append("STORAGE_ROOT")
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        missing.append("DATABASE_URL")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
