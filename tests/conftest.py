"""Shared fixtures: an isolated fakeredis server behind the real RedisStore."""

from datetime import datetime, timedelta, timezone

import fakeredis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
import pytest

from jobqueue.config import Settings
from jobqueue.queue.job_queue import JobQueue
from jobqueue.queue.store import RedisStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, ms: float = 0) -> None:
        self.now += timedelta(seconds=seconds, milliseconds=ms)


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, log_format="text", **overrides)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    # No client-side retries so simulated outages surface immediately
    client = fakeredis.FakeAsyncRedis(
        server=redis_server, decode_responses=True, retry=Retry(NoBackoff(), 0),
    )
    yield client
    await client.aclose()


@pytest.fixture
def store(redis_client):
    return RedisStore(redis_client)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(store, settings, clock):
    return JobQueue(store, settings, clock=clock)


@pytest.fixture
def make_queue(store, clock):
    """Queue over the same store with overridden settings."""
    def _make(**overrides) -> JobQueue:
        return JobQueue(store, make_settings(**overrides), clock=clock)
    return _make
