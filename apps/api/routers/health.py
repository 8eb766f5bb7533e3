"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database/Redis reachability and which upstream credentials are set.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "twitter_api_key": "configured" if settings.TWITTER_API_KEY else "missing",
        "media_enrichment": "configured" if settings.OPENROUTER_API_KEY else "disabled",
        "qa_answering": "configured" if (settings.OPENROUTER_QA_API_KEY or settings.OPENROUTER_API_KEY) else "disabled",
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
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.TWITTER_API_KEY:
        missing.append("TWITTER_API_KEY")

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
