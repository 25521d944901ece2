from __future__ import annotations

import os

# Keep the developer's environment out of the default config instance.
os.environ["REDIS_URL"] = ""
os.environ.setdefault("ENABLE_WORKER", "false")

import fakeredis
import pytest

from journalq.config import AppConfig
from journalq.jobs.memory_backend import MemoryQueueBackend
from journalq.jobs.queue import QueueService
from journalq.jobs.redis_backend import RedisQueueBackend
from journalq.jobs.retry import RetryPolicy
from journalq.jobs.worker import WorkerPool
from journalq.services.storage import InMemoryStorage

from helpers import make_settings


# ── Settings ──────────────────────────────────────────────────────────


@pytest.fixture(name="settings")
def settings_fixture() -> AppConfig:
    return make_settings()


# ── Backend / queue fixtures ──────────────────────────────────────────


@pytest.fixture(name="fake_redis")
async def fake_redis_fixture():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    # Fake clients share one server per host; start from an empty one
    await client.flushall()
    yield client


@pytest.fixture(name="memory_queue")
async def memory_queue_fixture(settings):
    queue = QueueService(settings, backend=MemoryQueueBackend())
    await queue.initialize()
    yield queue
    await queue.close()


@pytest.fixture(name="redis_queue")
async def redis_queue_fixture(settings, fake_redis):
    queue = QueueService(settings, backend=RedisQueueBackend(fake_redis, prefix="test"))
    await queue.initialize()
    yield queue
    await queue.close()


@pytest.fixture(name="queue", params=["memory", "redis"])
async def queue_fixture(request, settings):
    """The same queue behaviour, exercised against both backends."""
    if request.param == "memory":
        backend = MemoryQueueBackend()
    else:
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        await client.flushall()
        backend = RedisQueueBackend(client, prefix="test")

    queue = QueueService(settings, backend=backend)
    await queue.initialize()
    yield queue
    await queue.close()


@pytest.fixture(name="pool")
def pool_fixture(queue):
    return WorkerPool(
        queue,
        retry_policy=RetryPolicy(base_delay=0.0, jitter=0.0),
        concurrency=3,
        poll_interval=0.05,
    )


@pytest.fixture(name="storage")
def storage_fixture() -> InMemoryStorage:
    return InMemoryStorage()
