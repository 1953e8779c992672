"""Metrics endpoint for monitoring and observability."""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from jobqueue.config import get_settings
from jobqueue.models.job import QueueStats
from jobqueue.queue import JobQueue, StoreUnavailableError, get_queue, registry

router = APIRouter(prefix="/metrics", tags=["metrics"])
logger = logging.getLogger(__name__)

FAILED_ALERT_THRESHOLD = 10


def monitored_queues() -> list[str]:
    """Queues reported by the metrics endpoints."""
    return get_settings().worker_queue_list or registry.job_types


async def _collect(queue: JobQueue) -> dict[str, QueueStats]:
    return {name: await queue.get_queue_stats(name) for name in monitored_queues()}


@router.get("")
async def get_metrics(queue: JobQueue = Depends(get_queue)):
    """
    Get current metrics for monitoring.

    Returns:
        Per-queue job counts and failure alert flag
    """
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        stats = await _collect(queue)
    except StoreUnavailableError as e:
        logger.error(f"Failed to get metrics: {e}")
        return {
            "timestamp": timestamp,
            "store_connected": False,
            "error": str(e),
            "queues": {},
        }

    total_failed = sum(s.failed for s in stats.values())
    return {
        "timestamp": timestamp,
        "store_connected": True,
        "queues": {name: s.model_dump() for name, s in stats.items()},
        "total_pending": sum(s.pending for s in stats.values()),
        "failed": {
            "count": total_failed,
            "alert": total_failed > FAILED_ALERT_THRESHOLD,
        },
    }


@router.get("/queues/{job_type}", response_model=QueueStats)
async def get_queue_metrics(job_type: str, queue: JobQueue = Depends(get_queue)):
    """Job counts for a single queue."""
    return await queue.get_queue_stats(job_type)


@router.get("/prometheus", response_class=PlainTextResponse)
async def get_prometheus_metrics(queue: JobQueue = Depends(get_queue)):
    """
    Get metrics in Prometheus exposition format.
    """
    try:
        stats = await _collect(queue)
        connected = True
    except StoreUnavailableError:
        stats = {}
        connected = False

    lines = []
    for status in ("pending", "processing", "completed", "failed"):
        lines.extend([
            f"# HELP jobqueue_jobs_{status} Jobs in {status} state",
            f"# TYPE jobqueue_jobs_{status} gauge",
        ])
        for name, s in stats.items():
            lines.append(f'jobqueue_jobs_{status}{{queue="{name}"}} {getattr(s, status)}')
        lines.append("")

    lines.extend([
        "# HELP jobqueue_store_connected Whether the store is reachable (1=yes, 0=no)",
        "# TYPE jobqueue_store_connected gauge",
        f"jobqueue_store_connected {1 if connected else 0}",
        "",
    ])
    return "\n".join(lines)
