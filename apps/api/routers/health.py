"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
import redis.asyncio as redis

from config import settings
from database import Base, engine

router = APIRouter()


async def _probe_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


async def _probe_redis() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


@router.get("/health")
async def health_check():
    """
    Overall status. Redis only backs the per-client HTTP throttle, so a Redis
    outage degrades the service without stopping metering.
    """
    database = await _probe_database()
    cache = await _probe_redis()
    return {
        "status": "healthy" if database == "up" and cache == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": cache,
        "analysis": "live" if settings.OPENAI_API_KEY else "mock",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once the metering tables exist; every gate depends on them."""
    try:
        async with engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    except Exception as e:
        return JSONResponse(status_code=503, content={"ready": False, "database": f"down: {str(e)}"})

    missing = sorted(set(Base.metadata.tables) - existing)
    if settings.BILLING_ENABLED and not settings.STRIPE_SECRET_KEY:
        missing.append("STRIPE_SECRET_KEY")

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
