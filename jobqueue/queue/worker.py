"""Background worker for processing queued jobs.

A `Worker` drains one queue by polling `JobQueue.dequeue`, running the
handler registered for that job type, and reporting the outcome back with
`complete` or `fail`. `run_worker` starts one worker per registered type.
"""

import asyncio
import importlib
import logging
import signal
from typing import Any, Awaitable, Callable, Optional

from jobqueue.config import Settings, get_settings
from jobqueue.lib.json_logger import get_structured_logger, job_logger
from jobqueue.models.job import FailOutcome, Job
from .errors import StoreUnavailableError
from .job_queue import JobQueue, get_queue

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Any]]


class HandlerRegistry:
    """Maps job types to the async handler that processes them."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, job_type: str, handler: Optional[Handler] = None):
        """Register a handler, directly or as a decorator.

            @registry.register("email")
            async def send_email(job): ...
        """
        def decorator(func: Handler) -> Handler:
            if job_type in self._handlers:
                logger.warning(f"Replacing handler for job type: {job_type}")
            self._handlers[job_type] = func
            logger.info(f"Registered handler for job type: {job_type}")
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def get(self, job_type: str) -> Optional[Handler]:
        return self._handlers.get(job_type)

    @property
    def job_types(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# Default registry; modules listed in settings.handler_modules register here
registry = HandlerRegistry()


def load_handler_modules(modules: list[str]) -> None:
    """Import modules whose import side effect is registering handlers."""
    for module in modules:
        importlib.import_module(module)
        logger.info(f"Loaded handler module {module}")


class Worker:
    """Polling consumer for a single queue with a concurrency limit."""

    def __init__(
        self,
        queue: JobQueue,
        job_type: str,
        handler: Handler,
        max_concurrent: Optional[int] = None,
        poll_interval: Optional[float] = None,
        busy_interval: Optional[float] = None,
        run_once: bool = False,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.queue = queue
        self.job_type = job_type
        self.handler = handler
        self.max_concurrent = max(max_concurrent or settings.worker_max_concurrent, 1)
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval
        self.busy_interval = busy_interval if busy_interval is not None else settings.worker_busy_interval
        self.run_once = run_once
        self.lease_sweep_interval = settings.lease_sweep_interval
        self.processed = 0
        self._running = False
        self._tasks: set[asyncio.Task] = set()
        self._log = get_structured_logger(__name__, queue=job_type)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Stop polling; in-flight jobs are allowed to finish."""
        self._running = False

    async def run(self) -> int:
        """
        Process jobs until stopped (or after one job with run_once).

        Returns:
            Number of jobs processed
        """
        self._running = True
        loop = asyncio.get_running_loop()
        next_sweep = 0.0
        self._log.info(f"Starting worker for {self.job_type} (max_concurrent={self.max_concurrent})")

        try:
            while self._running:
                try:
                    if self.queue.leases_enabled and loop.time() >= next_sweep:
                        await self.queue.requeue_expired(self.job_type)
                        next_sweep = loop.time() + self.lease_sweep_interval

                    if self.active_count >= self.max_concurrent:
                        await asyncio.sleep(self.busy_interval)
                        continue

                    job = await self.queue.dequeue(self.job_type)

                    if job is None:
                        if self.run_once:
                            break
                        await asyncio.sleep(self.poll_interval)
                        continue

                    task = asyncio.create_task(self._process(job))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

                    if self.run_once:
                        break

                except StoreUnavailableError as e:
                    self._log.warning(f"Store unavailable, retrying in {self.poll_interval}s: {e}")
                    await asyncio.sleep(self.poll_interval)
                except Exception as e:
                    self._log.exception(f"Worker loop error: {e}")
                    await asyncio.sleep(self.poll_interval)
        finally:
            self._running = False
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            self._log.info(f"Worker stopped for {self.job_type} ({self.processed} processed)")

        return self.processed

    async def _process(self, job: Job) -> None:
        """Run the handler for one job and record the outcome."""
        log = job_logger(job.id, job.type).with_context(attempts=job.attempts)
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            try:
                result = await self.handler(job)
            except Exception as e:
                duration_ms = int((loop.time() - started) * 1000)
                log.warning(f"Job {job.id} handler error: {e}", extra={"duration_ms": duration_ms})
                outcome = await self.queue.fail(job.id, e)
                if outcome == FailOutcome.TERMINAL:
                    log.error(f"Job {job.id} exhausted its retries", extra={"status": "failed"})
                return

            await self.queue.complete(job.id, result if isinstance(result, dict) else None)
            log.info(
                f"Job {job.id} succeeded",
                extra={"duration_ms": int((loop.time() - started) * 1000), "status": "completed"},
            )
        except StoreUnavailableError as e:
            # Job stays processing; a lease sweep can pick it up later
            log.error(f"Could not record outcome of job {job.id}: {e}")
        except Exception as e:
            log.exception(f"Error recording outcome of job {job.id}: {e}")
        finally:
            self.processed += 1


async def run_worker(
    queue: JobQueue,
    handlers: Optional[HandlerRegistry] = None,
    job_types: Optional[list[str]] = None,
    stop_event: Optional[asyncio.Event] = None,
    install_signal_handlers: bool = True,
    **worker_kwargs,
) -> None:
    """
    Run one worker per job type until stopped.

    Args:
        queue: Queue to consume from
        handlers: Handler registry. Defaults to the module registry.
        job_types: Types to consume. Defaults to every registered type.
        stop_event: Setting it stops all workers gracefully
        install_signal_handlers: Stop on SIGTERM/SIGINT
    """
    handlers = handlers if handlers is not None else registry
    job_types = job_types or handlers.job_types
    stop_event = stop_event or asyncio.Event()

    workers = []
    for job_type in job_types:
        handler = handlers.get(job_type)
        if handler is None:
            logger.error(f"No handler registered for job type: {job_type}")
            continue
        workers.append(Worker(queue, job_type, handler, **worker_kwargs))

    if not workers:
        logger.warning("No workers to run")
        return

    logger.info(f"Starting worker for queues: {[w.job_type for w in workers]}")

    if install_signal_handlers:
        loop = asyncio.get_running_loop()

        def shutdown():
            logger.info("Shutdown signal received")
            stop_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

    async def stop_on_event():
        await stop_event.wait()
        for worker in workers:
            worker.stop()

    watcher = asyncio.create_task(stop_on_event())

    try:
        await asyncio.gather(*(worker.run() for worker in workers))
    except asyncio.CancelledError:
        logger.info("Worker tasks cancelled")
        raise
    finally:
        watcher.cancel()
        logger.info("Worker stopped")


async def main() -> None:
    settings = get_settings()
    load_handler_modules(settings.handler_module_list)

    queue = get_queue()
    try:
        await run_worker(queue, registry, settings.worker_queue_list or None)
    finally:
        await queue.close()


if __name__ == "__main__":
    # Handler modules register on the imported module, not on __main__
    from jobqueue.lib.json_logger import setup_logging
    from jobqueue.queue.worker import main as worker_main

    setup_logging(get_settings())
    asyncio.run(worker_main())
