"""Store-backed priority job queue.

Features:
- Priority queue using sorted sets (higher priority first)
- Idempotency keys to prevent duplicate jobs
- Retry with exponential backoff, terminal failure after max_retries
- Delayed index for scheduled retries
- Optional visibility leases for crash recovery
- Per-queue counters for stats
"""

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from jobqueue.config import Settings, get_settings
from jobqueue.models.job import (
    EnqueueOptions,
    EnqueueResult,
    FailOutcome,
    Job,
    JobStatus,
    QueueStats,
)
from .errors import StoreUnavailableError
from .retry import RetryPolicy
from .store import KeyValueStore, RedisStore

logger = logging.getLogger(__name__)

# Key prefixes (all keys are namespaced with settings.key_prefix)
JOB_PREFIX = "job:"
QUEUE_PREFIX = "queue:"  # ready index, score = priority
DELAYED_PREFIX = "delayed:"  # scheduled retries, score = eligible-at timestamp
PROCESSING_PREFIX = "processing:"  # leases, score = lease expiry timestamp
FAILED_PREFIX = "failed:"  # terminal failures, score = failure timestamp
IDEMPOTENCY_PREFIX = "idem:"
STATS_PREFIX = "stats:"

PROMOTE_BATCH = 100
SWEEP_BATCH = 100

LEASE_EXPIRED_ERROR = "lease expired"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(error: Union[BaseException, str]) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    return str(error)


class JobQueue:
    """Priority job queue with idempotent enqueue and bounded retries.

    The store is injected so tests and alternative deployments can swap it.
    Delivery is at-least-once: the only exclusivity guarantee is the atomic
    removal of a job id from the ready index.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._prefix = self._settings.key_prefix

    # ==================== Keys ====================

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}{JOB_PREFIX}{job_id}"

    def _queue_key(self, job_type: str) -> str:
        return f"{self._prefix}{QUEUE_PREFIX}{job_type}"

    def _delayed_key(self, job_type: str) -> str:
        return f"{self._prefix}{DELAYED_PREFIX}{job_type}"

    def _processing_key(self, job_type: str) -> str:
        return f"{self._prefix}{PROCESSING_PREFIX}{job_type}"

    def _failed_key(self, job_type: str) -> str:
        return f"{self._prefix}{FAILED_PREFIX}{job_type}"

    def _idempotency_key(self, key: str) -> str:
        return f"{self._prefix}{IDEMPOTENCY_PREFIX}{key}"

    def _stats_key(self, job_type: str, status: JobStatus) -> str:
        return f"{self._prefix}{STATS_PREFIX}{job_type}:{status.value}"

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def leases_enabled(self) -> bool:
        return bool(self._settings.lease_seconds)

    def _new_job_id(self, job_type: str) -> str:
        return f"{job_type}_{self._clock().strftime('%Y%m%d%H%M%S')}_{os.urandom(4).hex()}"

    async def _save(self, job: Job, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self.store.setex(self._job_key(job.id), ttl_seconds, job.model_dump_json())
        else:
            await self.store.set(self._job_key(job.id), job.model_dump_json())

    # ==================== Enqueue ====================

    async def enqueue(self, options: Optional[EnqueueOptions] = None, **kwargs) -> str:
        """
        Add a job to the queue.

        Accepts either an `EnqueueOptions` or its fields as keyword arguments
        (type, data, max_retries, initial_delay_ms, backoff_multiplier,
        idempotency_key, priority).

        Returns:
            The job id. With an idempotency key that was already used inside
            its validity window, the id of the original job.

        Raises:
            StoreUnavailableError: If the store cannot be reached
            pydantic.ValidationError: If the options are invalid
        """
        if options is None:
            options = EnqueueOptions(**kwargs)
        elif kwargs:
            raise TypeError("Pass either EnqueueOptions or keyword arguments, not both")

        settings = self._settings
        pointer_key = None

        if options.idempotency_key:
            pointer_key = self._idempotency_key(options.idempotency_key)
            existing = await self.store.get(pointer_key)
            if existing:
                logger.info(f"Job with idempotency key {options.idempotency_key} already exists: {existing}")
                return existing

        job_id = self._new_job_id(options.type)

        if pointer_key:
            # Claim the key before writing anything so a racing enqueue with
            # the same key resolves to this job
            claimed = await self.store.set_if_absent(
                pointer_key, job_id, settings.idempotency_ttl_seconds
            )
            if not claimed:
                existing = await self.store.get(pointer_key)
                if existing:
                    logger.info(f"Lost idempotency race for {options.idempotency_key}, using {existing}")
                    return existing
                await self.store.setex(pointer_key, settings.idempotency_ttl_seconds, job_id)

        job = Job(
            id=job_id,
            type=options.type,
            data=options.data,
            max_retries=options.max_retries if options.max_retries is not None else settings.default_max_retries,
            initial_delay_ms=(
                options.initial_delay_ms
                if options.initial_delay_ms is not None
                else settings.default_initial_delay_ms
            ),
            backoff_multiplier=(
                options.backoff_multiplier
                if options.backoff_multiplier is not None
                else settings.default_backoff_multiplier
            ),
            priority=options.priority if options.priority is not None else settings.default_priority,
            idempotency_key=options.idempotency_key,
            created_at=self._clock().isoformat(),
        )

        try:
            await self._save(job)
            await self.store.zadd(self._queue_key(job.type), job.priority, job.id)
        except StoreUnavailableError:
            if pointer_key:
                await self._release_pointer(pointer_key)
            raise

        logger.info(
            f"Enqueued job {job.id} to {job.type} "
            f"(priority: {job.priority}, idem_key: {job.idempotency_key})"
        )
        return job.id

    async def _release_pointer(self, pointer_key: str) -> None:
        try:
            await self.store.delete(pointer_key)
        except StoreUnavailableError as e:
            logger.error(f"Could not release idempotency pointer {pointer_key}: {e}")

    async def try_enqueue(self, options: Optional[EnqueueOptions] = None, **kwargs) -> EnqueueResult:
        """Like `enqueue`, but reports store failures in the result."""
        try:
            job_id = await self.enqueue(options, **kwargs)
        except StoreUnavailableError as e:
            logger.error(f"Enqueue failed: {e}")
            return EnqueueResult(ok=False, reason=str(e))
        return EnqueueResult(ok=True, job_id=job_id)

    # ==================== Dequeue ====================

    async def _promote_due(self, job_type: str) -> int:
        """Move scheduled retries whose backoff has elapsed to the ready index."""
        delayed_key = self._delayed_key(job_type)
        now_ts = self._clock().timestamp()
        promoted = 0

        due = await self.store.zrange(delayed_key, 0, PROMOTE_BATCH - 1, withscores=True)
        for job_id, eligible_at in due:
            if eligible_at > now_ts:
                break
            if not await self.store.zrem(delayed_key, job_id):
                continue  # another worker promoted it

            job = await self.get_status(job_id)
            if job is None:
                logger.warning(f"Delayed job {job_id} not found in storage")
                continue

            await self.store.zadd(self._queue_key(job_type), job.priority, job_id)
            promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} delayed job(s) in {job_type}")
        return promoted

    async def _peek(self, job_type: str) -> Optional[str]:
        """Oldest job id among those with the highest priority."""
        queue_key = self._queue_key(job_type)
        top = await self.store.zrange(queue_key, 0, 0, rev=True, withscores=True)
        if not top:
            return None
        best_score = top[0][1]
        # Equal scores are ordered by member name, and ids sort by creation time
        oldest = await self.store.zrangebyscore(queue_key, best_score, best_score, count=1)
        return oldest[0] if oldest else None

    async def dequeue(self, job_type: str) -> Optional[Job]:
        """
        Take the next job from a queue.

        Returns:
            The job, now `processing` with `attempts` incremented, or None if
            the queue has no eligible job.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        await self._promote_due(job_type)

        job_id = await self._peek(job_type)
        if job_id is None:
            return None

        if not await self.store.zrem(self._queue_key(job_type), job_id):
            logger.debug(f"Job {job_id} was taken by another worker")
            return None

        job = await self.get_status(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found in storage")
            return None

        now = self._clock()
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.processed_at = now.isoformat()
        job.retry_at = None

        if self.leases_enabled:
            lease_expires = now + timedelta(seconds=self._settings.lease_seconds)
            job.lease_expires_at = lease_expires.isoformat()
            await self.store.zadd(self._processing_key(job_type), lease_expires.timestamp(), job_id)

        await self._save(job)
        await self.store.incrby(self._stats_key(job_type, JobStatus.PROCESSING), 1)

        logger.info(f"Dequeued job {job_id} from {job_type} (attempt {job.attempts}/{job.max_retries})")
        return job

    # ==================== Completion / Failure ====================

    async def _release_processing(self, job: Job) -> None:
        if self.leases_enabled:
            await self.store.zrem(self._processing_key(job.type), job.id)
        job.lease_expires_at = None
        await self.store.incrby(self._stats_key(job.type, JobStatus.PROCESSING), -1)

    async def complete(self, job_id: str, result: Optional[dict] = None) -> bool:
        """
        Mark a job as completed successfully.

        Completing an already completed job is a no-op. Returns False when the
        job is unknown or not in a state that can complete.
        """
        job = await self.get_status(job_id)

        if job is None:
            logger.warning(f"Cannot complete unknown job {job_id}")
            return False
        if job.status == JobStatus.COMPLETED:
            return True
        if job.status != JobStatus.PROCESSING:
            logger.warning(f"Cannot complete job {job_id} in status {job.status.value}")
            return False

        await self._release_processing(job)
        job.status = JobStatus.COMPLETED
        job.completed_at = self._clock().isoformat()
        job.result = result

        await self._save(job, ttl_seconds=self._settings.completed_ttl_seconds)
        await self.store.incrby(self._stats_key(job.type, JobStatus.COMPLETED), 1)

        logger.info(f"Job {job_id} completed successfully")
        return True

    async def fail(self, job_id: str, error: Union[BaseException, str]) -> FailOutcome:
        """
        Record a failed attempt.

        If attempts remain, the job goes back to pending and becomes eligible
        again after its backoff delay. Otherwise it is failed for good and kept
        for `failed_ttl_seconds` for inspection.
        """
        job = await self.get_status(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            status = job.status.value if job else "missing"
            logger.warning(f"Ignoring failure for job {job_id} in status {status}")
            return FailOutcome.IGNORED

        now = self._clock()
        message = _error_message(error)
        policy = RetryPolicy.for_job(
            job,
            max_delay_ms=self._settings.max_backoff_ms,
            jitter=self._settings.retry_jitter,
        )
        retry = policy.should_retry(job.attempts)
        if retry:
            delay_ms = policy.get_delay_ms(job.attempts)
            eligible_at = now + timedelta(milliseconds=delay_ms)

        job.last_error = message
        job.error_history.append(f"[{now.isoformat()}] {message}")
        await self._release_processing(job)

        if retry:
            job.status = JobStatus.PENDING
            job.retry_at = eligible_at.isoformat()

            await self._save(job)
            await self.store.zadd(self._delayed_key(job.type), eligible_at.timestamp(), job.id)

            logger.warning(
                f"Job {job.id} failed, retry {job.attempts}/{job.max_retries} "
                f"in {delay_ms / 1000:.1f}s: {message}"
            )
            return FailOutcome.RETRY_SCHEDULED

        job.status = JobStatus.FAILED
        job.completed_at = now.isoformat()

        await self._save(job, ttl_seconds=self._settings.failed_ttl_seconds)
        await self.store.zadd(self._failed_key(job.type), now.timestamp(), job.id)
        await self.store.incrby(self._stats_key(job.type, JobStatus.FAILED), 1)

        logger.error(f"Job {job.id} failed permanently after {job.attempts} attempts: {message}")
        return FailOutcome.TERMINAL

    # ==================== Leases ====================

    async def requeue_expired(self, job_type: str) -> int:
        """
        Route jobs whose processing lease expired through `fail`.

        A worker that died mid-job leaves it `processing`; this gives it the
        normal retry/terminal treatment. Returns the number of jobs swept.
        """
        if not self.leases_enabled:
            return 0

        processing_key = self._processing_key(job_type)
        now_ts = self._clock().timestamp()
        swept = 0

        entries = await self.store.zrange(processing_key, 0, SWEEP_BATCH - 1, withscores=True)
        for job_id, expires_at in entries:
            if expires_at > now_ts:
                break
            if not await self.store.zrem(processing_key, job_id):
                continue  # finished or swept elsewhere

            outcome = await self.fail(job_id, LEASE_EXPIRED_ERROR)
            if outcome != FailOutcome.IGNORED:
                swept += 1
                logger.warning(f"Lease expired for job {job_id}: {outcome.value}")

        return swept

    # ==================== Inspection ====================

    async def get_status(self, job_id: str) -> Optional[Job]:
        """Get the current state of a job, or None if unknown or expired."""
        job_data = await self.store.get(self._job_key(job_id))

        if not job_data:
            return None

        return Job.model_validate_json(job_data)

    async def list_failed(self, job_type: str, limit: int = 100) -> list[Job]:
        """Terminally failed jobs still retained, most recent first."""
        job_ids = await self.store.zrange(self._failed_key(job_type), 0, limit - 1, rev=True)
        jobs = []

        for job_id in job_ids:
            job = await self.get_status(job_id)
            if job and job.status == JobStatus.FAILED:
                jobs.append(job)

        return jobs

    async def get_queue_length(self, job_type: str) -> int:
        """Jobs waiting in a queue, including scheduled retries."""
        ready = await self.store.zcard(self._queue_key(job_type))
        delayed = await self.store.zcard(self._delayed_key(job_type))
        return ready + delayed

    async def _counter(self, job_type: str, status: JobStatus) -> int:
        value = await self.store.get(self._stats_key(job_type, status))
        return max(int(value), 0) if value else 0

    async def get_queue_stats(self, job_type: str) -> QueueStats:
        """
        Get job counts for a queue.

        `pending` is exact. `processing`, `completed` and `failed` come from
        counters updated with each transition; completed/failed count
        transitions and are not reduced when records expire.
        """
        return QueueStats(
            pending=await self.get_queue_length(job_type),
            processing=await self._counter(job_type, JobStatus.PROCESSING),
            completed=await self._counter(job_type, JobStatus.COMPLETED),
            failed=await self._counter(job_type, JobStatus.FAILED),
        )

    async def ping(self) -> bool:
        """Check whether the store is reachable."""
        try:
            return await self.store.ping()
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        await self.store.close()


_default_queue: Optional[JobQueue] = None


def get_queue() -> JobQueue:
    """Get the process-wide queue instance (for dependency injection)."""
    global _default_queue
    if _default_queue is None:
        settings = get_settings()
        _default_queue = JobQueue(RedisStore.from_url(settings.redis_url), settings)
    return _default_queue
