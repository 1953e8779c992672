"""Health check endpoints."""

from fastapi import APIRouter, Depends
from datetime import datetime, timezone
import asyncio
import logging

from jobqueue.config import get_settings
from jobqueue.queue import JobQueue, get_queue

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/")
async def health_check():
    """Basic health check - always returns ok if service is running."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "jobqueue",
        "version": "0.1.0"
    }


@router.get("/ready")
async def readiness_check(queue: JobQueue = Depends(get_queue)):
    """
    Readiness check including the backing store.
    """
    settings = get_settings()
    store_status = await _check_store(queue)

    return {
        "status": "ok" if store_status["status"] == "ok" else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {"store": store_status},
        "config": {
            "redis_url": settings.redis_url.split("@")[-1] if "@" in settings.redis_url else settings.redis_url,
        }
    }


async def _check_store(queue: JobQueue) -> dict:
    """Check the store connection."""
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        reachable = await asyncio.wait_for(queue.ping(), timeout=5.0)
    except asyncio.TimeoutError:
        return {"status": "timeout", "error": "Connection timed out"}

    if not reachable:
        logger.warning("Store health check failed")
        return {"status": "error", "error": "Store unavailable"}
    return {"status": "ok", "latency_ms": round((loop.time() - started) * 1000, 1)}
