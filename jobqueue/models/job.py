"""Job record and the value types exchanged with queue callers."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Job status states.

    pending -> processing -> completed
                          -> pending (scheduled retry)
                          -> failed (retries exhausted, terminal)
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailOutcome(str, Enum):
    """What `JobQueue.fail` did with a failed attempt."""
    RETRY_SCHEDULED = "retry_scheduled"
    TERMINAL = "terminal"
    IGNORED = "ignored"  # job was not processing (unknown or already terminal)


class Job(BaseModel):
    """A job in the queue."""
    id: str
    type: str
    data: dict = {}
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_retries: int = 3
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    priority: int = 0
    idempotency_key: Optional[str] = None
    last_error: Optional[str] = None
    error_history: list[str] = []  # Track all errors
    result: Optional[dict] = None
    created_at: str
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
    lease_expires_at: Optional[str] = None
    retry_at: Optional[str] = None


class EnqueueOptions(BaseModel):
    """Arguments accepted by `JobQueue.enqueue`.

    Unset numeric fields fall back to the configured defaults.
    """
    type: str = Field(min_length=1)
    data: dict = {}
    max_retries: Optional[int] = Field(default=None, ge=1)
    initial_delay_ms: Optional[int] = Field(default=None, ge=0)
    backoff_multiplier: Optional[float] = Field(default=None, ge=1.0)
    idempotency_key: Optional[str] = Field(default=None, min_length=1)
    priority: Optional[int] = None


class EnqueueResult(BaseModel):
    """Explicit enqueue outcome for callers that don't want exceptions."""
    ok: bool
    job_id: Optional[str] = None
    reason: Optional[str] = None


class QueueStats(BaseModel):
    """Per-queue job counts."""
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
