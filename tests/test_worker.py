"""Tests for the polling worker loop and handler registry."""

import asyncio
import logging

from jobqueue.models.job import JobStatus
from jobqueue.queue.errors import StoreUnavailableError
from jobqueue.queue.worker import HandlerRegistry, Worker, run_worker


FAST = {"poll_interval": 0.01, "busy_interval": 0.005}


async def _wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestRunOnce:

    async def test_success_completes_job(self, queue, settings):
        """A handler that returns completes the job with its result."""
        job_id = await queue.enqueue(type="email", data={"to": "a@example.com"})
        seen = []

        async def handler(job):
            seen.append(job)
            return {"delivered": True}

        worker = Worker(queue, "email", handler, run_once=True, settings=settings, **FAST)
        processed = await worker.run()

        assert processed == 1
        assert seen[0].id == job_id
        assert seen[0].attempts == 1
        job = await queue.get_status(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"delivered": True}

    async def test_handler_error_routes_to_fail(self, queue, settings):
        """A handler exception becomes a failed attempt."""
        job_id = await queue.enqueue(type="email", max_retries=2)

        async def handler(job):
            raise ValueError("recipient a@example.com rejected")

        worker = Worker(queue, "email", handler, run_once=True, settings=settings, **FAST)
        await worker.run()

        job = await queue.get_status(job_id)
        assert job.status == JobStatus.PENDING
        assert job.last_error == "recipient a@example.com rejected"
        assert not worker.is_running

    async def test_empty_queue_returns_immediately(self, queue, settings):
        async def handler(job):
            raise AssertionError("should not be called")

        worker = Worker(queue, "email", handler, run_once=True, settings=settings, **FAST)
        assert await worker.run() == 0

    async def test_non_dict_result_is_not_stored(self, queue, settings):
        """Only dict results are stored on the job."""
        job_id = await queue.enqueue(type="email")

        async def handler(job):
            return "ok"

        await Worker(queue, "email", handler, run_once=True, settings=settings, **FAST).run()

        job = await queue.get_status(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result is None

    async def test_outcome_recording_error_is_logged(self, queue, settings, monkeypatch, caplog):
        """An unexpected error while recording a failure is logged, not lost."""
        job_id = await queue.enqueue(type="email")

        async def broken_fail(job_id, error):
            raise RuntimeError("corrupt record")

        monkeypatch.setattr(queue, "fail", broken_fail)

        async def handler(job):
            raise ValueError("smtp down")

        with caplog.at_level(logging.ERROR, logger="worker.email"):
            processed = await Worker(queue, "email", handler, run_once=True, settings=settings, **FAST).run()

        assert processed == 1
        errors = [r for r in caplog.records if r.name == "worker.email" and r.levelno == logging.ERROR]
        assert errors
        assert errors[-1].job_id == job_id
        assert errors[-1].exc_info[0] is RuntimeError


class TestContinuous:

    async def test_drains_queue_and_stops(self, queue, settings):
        """A continuous worker drains the queue and stops cleanly."""
        ids = [await queue.enqueue(type="sms", data={"n": n}) for n in range(5)]

        async def handler(job):
            await asyncio.sleep(0)

        worker = Worker(queue, "sms", handler, settings=settings, **FAST)
        task = asyncio.create_task(worker.run())

        async def all_done():
            statuses = [(await queue.get_status(i)).status for i in ids]
            return all(s == JobStatus.COMPLETED for s in statuses)

        await _wait_for(all_done)
        worker.stop()
        assert await asyncio.wait_for(task, timeout=1) == 5

    async def test_respects_max_concurrent(self, queue, settings):
        """No more than max_concurrent handlers run at once."""
        for n in range(6):
            await queue.enqueue(type="pdf", data={"n": n})
        active = 0
        peak = 0
        release = asyncio.Event()

        async def handler(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await release.wait()
            active -= 1

        worker = Worker(queue, "pdf", handler, max_concurrent=2, settings=settings, **FAST)
        task = asyncio.create_task(worker.run())

        async def saturated():
            return worker.active_count == 2

        await _wait_for(saturated)
        await asyncio.sleep(0.05)
        assert peak == 2
        assert (await queue.get_queue_stats("pdf")).pending == 4

        release.set()

        async def drained():
            return (await queue.get_queue_stats("pdf")).completed == 6

        await _wait_for(drained)
        worker.stop()
        await asyncio.wait_for(task, timeout=1)
        assert peak == 2

    async def test_stop_waits_for_in_flight_jobs(self, queue, settings):
        """Stopping lets in-flight jobs finish first."""
        job_id = await queue.enqueue(type="pdf")
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(job):
            started.set()
            await release.wait()

        worker = Worker(queue, "pdf", handler, settings=settings, **FAST)
        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(started.wait(), timeout=1)

        worker.stop()
        await asyncio.sleep(0.02)
        assert not task.done()

        release.set()
        await asyncio.wait_for(task, timeout=1)
        assert (await queue.get_status(job_id)).status == JobStatus.COMPLETED


class FlakyQueue:
    """Queue stand-in whose dequeue fails once, then reports empty."""

    leases_enabled = False

    def __init__(self):
        self.dequeue_calls = 0

    async def dequeue(self, job_type):
        self.dequeue_calls += 1
        if self.dequeue_calls == 1:
            raise StoreUnavailableError("zrange")
        return None


async def test_loop_retries_after_store_error(settings):
    """A store outage in the loop is retried, not fatal."""
    queue = FlakyQueue()

    async def handler(job):
        raise AssertionError("should not be called")

    worker = Worker(queue, "email", handler, settings=settings, **FAST)
    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.08)
    worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert queue.dequeue_calls >= 2


async def test_worker_sweeps_expired_leases(make_queue, clock):
    """The worker requeues jobs whose lease expired and then runs them."""
    queue = make_queue(lease_seconds=5, lease_sweep_interval=0.01)
    job_id = await queue.enqueue(type="pdf")
    await queue.dequeue("pdf")  # worker that "crashed"
    clock.advance(seconds=6)

    async def handler(job):
        return None

    worker = Worker(queue, "pdf", handler, settings=queue.settings, **FAST)
    task = asyncio.create_task(worker.run())

    async def requeued():
        return (await queue.get_status(job_id)).last_error == "lease expired"

    await _wait_for(requeued)
    clock.advance(seconds=2)

    async def completed():
        return (await queue.get_status(job_id)).status == JobStatus.COMPLETED

    await _wait_for(completed)
    worker.stop()
    await asyncio.wait_for(task, timeout=1)


# ===================================================================== #
#  Registry / run_worker                                                 #
# ===================================================================== #

def test_registry_register_direct_and_decorator():
    """Handlers register directly or as a decorator."""
    registry = HandlerRegistry()

    async def send_email(job):
        return None

    registry.register("email", send_email)

    @registry.register("sms")
    async def send_sms(job):
        return None

    assert registry.get("email") is send_email
    assert registry.get("sms") is send_sms
    assert registry.get("pdf") is None
    assert "sms" in registry
    assert len(registry) == 2
    assert registry.job_types == ["email", "sms"]


async def test_run_worker_consumes_every_registered_queue(queue, settings):
    """run_worker starts one worker per registered job type."""
    registry = HandlerRegistry()
    handled = []

    @registry.register("email")
    async def send_email(job):
        handled.append(("email", job.id))

    @registry.register("sms")
    async def send_sms(job):
        handled.append(("sms", job.id))

    email_id = await queue.enqueue(type="email")
    sms_id = await queue.enqueue(type="sms")
    stop = asyncio.Event()

    task = asyncio.create_task(run_worker(
        queue, registry, stop_event=stop, install_signal_handlers=False,
        settings=settings, **FAST,
    ))

    async def both_handled():
        return len(handled) == 2

    await _wait_for(both_handled)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert sorted(handled) == [("email", email_id), ("sms", sms_id)]


async def test_run_worker_skips_types_without_handler(queue):
    registry = HandlerRegistry()
    # Returns immediately: nothing to run
    await asyncio.wait_for(
        run_worker(queue, registry, job_types=["email"], install_signal_handlers=False),
        timeout=1,
    )
