"""Queue module for background job processing.

Features:
- Priority queue using sorted sets
- Retry with exponential backoff
- Terminal failure index for inspection
- Idempotency keys to prevent duplicate jobs
"""

from .errors import JobQueueError, StoreUnavailableError
from .job_queue import JobQueue, get_queue
from .retry import RetryPolicy
from .store import KeyValueStore, RedisStore
from .worker import HandlerRegistry, Worker, registry, run_worker

__all__ = [
    'JobQueue',
    'JobQueueError',
    'StoreUnavailableError',
    'RetryPolicy',
    'KeyValueStore',
    'RedisStore',
    'HandlerRegistry',
    'Worker',
    'registry',
    'run_worker',
    'get_queue',
]
