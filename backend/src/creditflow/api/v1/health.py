"""Health check endpoints for liveness and readiness probes."""
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from redis import asyncio as aioredis
from sqlalchemy import text

from creditflow.config import settings
from creditflow.database import engine

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    """
    Liveness probe.

    Does not check external dependencies.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready", tags=["Health"])
async def readiness_check() -> JSONResponse:
    """
    Readiness probe.

    Checks database connectivity and the Redis instance backing the job
    queue (and the lock leases when lock_backend is redis). Returns 200 only
    if all of them are reachable.
    """
    checks = {"database": "unknown", "redis": "unknown"}
    ready = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        checks["database"] = "disconnected"
        ready = False

    redis_urls = {str(settings.arq_redis_url)}
    if settings.lock_backend == "redis":
        redis_urls.add(str(settings.redis_url))
    try:
        for url in redis_urls:
            redis_client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
            try:
                await redis_client.ping()
            finally:
                await redis_client.aclose()
        checks["redis"] = "connected"
    except Exception as exc:
        logger.error("redis_health_check_failed", error=str(exc))
        checks["redis"] = "disconnected"
        ready = False

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "ready": ready,
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
