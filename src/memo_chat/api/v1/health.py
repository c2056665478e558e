"""Health check and process metrics endpoints."""

import asyncio
import resource
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from memo_chat.config import Settings
from memo_chat.dependencies import get_app_settings
from memo_chat.utils.logging import get_logger

logger = get_logger("health")

router = APIRouter(tags=["health"])

_STARTED_AT = time.monotonic()

# ru_maxrss is reported in kilobytes on Linux and in bytes on macOS
_MAXRSS_DIVISOR = 1024 * 1024 if sys.platform == "darwin" else 1024


def _uptime_seconds() -> float:
    return round(time.monotonic() - _STARTED_AT, 3)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _memory_usage() -> Dict[str, Any]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {"max_rss_mb": round(usage.ru_maxrss / _MAXRSS_DIVISOR, 1)}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(settings: Settings = Depends(get_app_settings)):
    """
    Health check endpoint.

    Does not check external dependencies; healthy whenever the process serves requests.
    """
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
        "uptime": _uptime_seconds(),
        "timestamp": _timestamp(),
    }


@router.get("/metrics", status_code=status.HTTP_200_OK)
async def metrics():
    """Process uptime (seconds) and peak resident memory."""
    return {
        "uptime": _uptime_seconds(),
        "memory": _memory_usage(),
        "timestamp": _timestamp(),
    }


async def _check_redis(request: Request) -> bool:
    redis_pool = getattr(request.app.state, "redis_pool", None)
    if redis_pool is None:
        return False
    try:
        import redis.asyncio as redis

        client = redis.Redis(connection_pool=redis_pool)
        await client.ping()
        return True
    except Exception as e:
        logger.warning(f"Redis connection check failed: {e}")
        return False


async def _check_qdrant(request: Request) -> bool:
    chunk_store = getattr(request.app.state, "chunk_store", None)
    if chunk_store is None:
        return False
    try:
        await asyncio.to_thread(chunk_store.ping)
        return True
    except Exception as e:
        logger.warning(f"Qdrant connection check failed: {e}")
        return False


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(request: Request, settings: Settings = Depends(get_app_settings)):
    """
    Readiness check endpoint.

    Checks connectivity to:
    - Redis (shared rate-limit counters)
    - Qdrant (memo chunks)

    Returns 503 if any dependency is unavailable.
    """
    logger.debug("Readiness check requested")

    checks = {
        "redis": await _check_redis(request),
        "qdrant": await _check_qdrant(request),
    }
    body = {
        "status": "ready" if all(checks.values()) else "not_ready",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
        "checks": checks,
    }

    if not all(checks.values()):
        logger.warning(f"Readiness check failed: {checks}")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)

    return body
