"""Job endpoints: enqueue and status lookup."""

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
import logging

from jobqueue.models.job import EnqueueOptions, Job
from jobqueue.queue import JobQueue, get_queue

router = APIRouter()
logger = logging.getLogger(__name__)


class EnqueueResponse(BaseModel):
    job_id: str


@router.post("", status_code=202, response_model=EnqueueResponse)
async def enqueue_job(options: EnqueueOptions, queue: JobQueue = Depends(get_queue)):
    """
    Enqueue a job.

    Repeating a request with the same idempotency key returns the original
    job id. Store outages surface as 503 (see main.py).
    """
    job_id = await queue.enqueue(options)
    return EnqueueResponse(job_id=job_id)


@router.get("/{job_id}", response_model=Job)
async def get_job(job_id: str, queue: JobQueue = Depends(get_queue)):
    """Current state of a job. Finished jobs disappear once their retention expires."""
    job = await queue.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


@router.get("/failed/{job_type}", response_model=list[Job])
async def list_failed_jobs(job_type: str, limit: int = 100, queue: JobQueue = Depends(get_queue)):
    """Terminally failed jobs still retained for inspection."""
    return await queue.list_failed(job_type, limit=min(max(limit, 1), 1000))
