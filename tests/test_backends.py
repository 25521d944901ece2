from __future__ import annotations

import asyncio
from datetime import timedelta

import fakeredis
import pytest

from journalq.jobs.backend import STALLED_ERROR
from journalq.jobs.memory_backend import MemoryQueueBackend
from journalq.jobs.models import JobRecord, JobStatus, new_job_id, utcnow
from journalq.jobs.redis_backend import RedisQueueBackend


# ── Helpers ──────────────────────────────────────────────────────────


def _record(job_type: str = "echo", offset: float = 0.0, **overrides) -> JobRecord:
    data = {
        "id": new_job_id(),
        "type": job_type,
        "payload": {"text": "hello"},
        "created_at": utcnow() + timedelta(seconds=offset),
    }
    data.update(overrides)
    return JobRecord(**data)


@pytest.fixture(name="backend", params=["memory", "redis"])
async def backend_fixture(request):
    if request.param == "memory":
        backend = MemoryQueueBackend()
    else:
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        await client.flushall()
        backend = RedisQueueBackend(client, prefix="test")
    await backend.connect()
    yield backend
    await backend.close()


# ── Tests ────────────────────────────────────────────────────────────


class TestAddAndGet:
    async def test_roundtrip(self, backend):
        record = _record(bundle_id="b1", max_attempts=2, backoff_base=1.5)
        await backend.add(record)

        stored = await backend.get(record.id)
        assert stored.id == record.id
        assert stored.type == "echo"
        assert stored.payload == {"text": "hello"}
        assert stored.status == JobStatus.WAITING
        assert stored.max_attempts == 2
        assert stored.backoff_base == 1.5
        assert stored.bundle_id == "b1"

    async def test_unknown_id(self, backend):
        assert await backend.get("job_missing") is None

    async def test_get_by_bundle(self, backend):
        a = _record(bundle_id="b1", offset=0)
        b = _record(bundle_id="b1", offset=1)
        other = _record(bundle_id="b2")
        for r in (b, a, other):
            await backend.add(r)

        jobs = await backend.get_by_bundle("b1")
        assert [j.id for j in jobs] == [a.id, b.id]
        assert await backend.get_by_bundle("nope") == []


class TestClaim:
    async def test_claims_oldest_first(self, backend):
        records = [_record(offset=i) for i in range(4)]
        for r in reversed(records):
            await backend.add(r)

        claimed = await backend.claim(2, utcnow() + timedelta(seconds=10))
        assert [c.id for c in claimed] == [records[0].id, records[1].id]
        for c in claimed:
            assert c.status == JobStatus.ACTIVE
            assert c.attempts == 1
            assert c.started_at is not None

    async def test_claimed_jobs_are_not_claimed_again(self, backend):
        await backend.add(_record())
        now = utcnow()
        assert len(await backend.claim(5, now)) == 1
        assert await backend.claim(5, now) == []

    async def test_concurrent_claims_never_overlap(self, backend):
        for i in range(10):
            await backend.add(_record(offset=i * 0.001))

        now = utcnow() + timedelta(seconds=1)
        batches = await asyncio.gather(*(backend.claim(3, now) for _ in range(6)))
        ids = [job.id for batch in batches for job in batch]
        assert len(ids) == 10
        assert len(set(ids)) == 10

    async def test_respects_not_before(self, backend):
        now = utcnow()
        later = _record(not_before=now + timedelta(seconds=30))
        await backend.add(later)

        assert await backend.claim(5, now) == []
        claimed = await backend.claim(5, now + timedelta(seconds=31))
        assert [c.id for c in claimed] == [later.id]

    async def test_zero_limit(self, backend):
        await backend.add(_record())
        assert await backend.claim(0, utcnow()) == []


class TestTransitions:
    async def _active(self, backend) -> JobRecord:
        await backend.add(_record())
        (job,) = await backend.claim(1, utcnow())
        return job

    async def test_complete(self, backend):
        job = await self._active(backend)
        done = await backend.mark_completed(job.id, {"out": "HELLO"}, utcnow())
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.result == {"out": "HELLO"}
        assert done.completed_at is not None

    async def test_retry_puts_job_back_with_delay(self, backend):
        job = await self._active(backend)
        not_before = utcnow() + timedelta(seconds=5)
        waiting = await backend.mark_retry(job.id, "timeout", not_before)
        assert waiting.status == JobStatus.WAITING
        assert waiting.error == "timeout"
        assert waiting.progress == 0

        assert await backend.claim(1, utcnow()) == []
        (again,) = await backend.claim(1, not_before + timedelta(seconds=1))
        assert again.attempts == 2

    async def test_fail(self, backend):
        job = await self._active(backend)
        failed = await backend.mark_failed(job.id, "bad input", utcnow())
        assert failed.status == JobStatus.FAILED
        assert failed.error == "bad input"

    async def test_transitions_require_active_job(self, backend):
        record = _record()
        await backend.add(record)
        now = utcnow()
        assert await backend.mark_completed(record.id, None, now) is None
        assert await backend.mark_failed(record.id, "x", now) is None
        assert await backend.mark_retry(record.id, "x", now) is None
        assert await backend.mark_completed("job_missing", None, now) is None

    async def test_terminal_state_is_final(self, backend):
        job = await self._active(backend)
        await backend.mark_completed(job.id, "ok", utcnow())
        assert await backend.mark_failed(job.id, "late", utcnow()) is None
        assert (await backend.get(job.id)).status == JobStatus.COMPLETED

    async def test_progress_is_monotonic(self, backend):
        job = await self._active(backend)
        assert await backend.update_progress(job.id, 30) is True
        assert await backend.update_progress(job.id, 20) is False
        assert await backend.update_progress(job.id, 30) is False
        assert (await backend.get(job.id)).progress == 30

    async def test_progress_ignored_when_not_active(self, backend):
        record = _record()
        await backend.add(record)
        assert await backend.update_progress(record.id, 50) is False

    async def test_unserializable_result_raises_and_leaves_job_active(self, backend):
        job = await self._active(backend)
        with pytest.raises(TypeError):
            await backend.mark_completed(job.id, object(), utcnow())
        assert (await backend.get(job.id)).status == JobStatus.ACTIVE


class TestQueries:
    async def test_get_by_states_and_counts(self, backend):
        records = [_record(offset=i) for i in range(4)]
        for r in records:
            await backend.add(r)

        now = utcnow() + timedelta(seconds=10)
        first, second, third = await backend.claim(3, now)
        await backend.mark_completed(first.id, 1, now)
        await backend.mark_failed(second.id, "nope", now)

        waiting = await backend.get_by_states({JobStatus.WAITING})
        assert [j.id for j in waiting] == [records[3].id]

        active = await backend.get_by_states({JobStatus.ACTIVE})
        assert [j.id for j in active] == [third.id]

        terminal = await backend.get_by_states({JobStatus.COMPLETED, JobStatus.FAILED})
        assert {j.id for j in terminal} == {first.id, second.id}

        assert await backend.counts() == {
            "waiting": 1,
            "active": 1,
            "completed": 1,
            "failed": 1,
        }


class TestReap:
    async def test_removes_only_old_terminal_jobs(self, backend):
        records = [_record(bundle_id="b1", offset=i) for i in range(3)]
        for r in records:
            await backend.add(r)

        now = utcnow() + timedelta(seconds=10)
        old, recent = await backend.claim(2, now)
        await backend.mark_completed(old.id, "ok", now - timedelta(days=2))
        await backend.mark_failed(recent.id, "x", now)

        removed = await backend.reap(now - timedelta(days=1))
        assert removed == 1
        assert await backend.get(old.id) is None
        assert await backend.get(recent.id) is not None
        # Waiting job untouched
        assert await backend.get(records[2].id) is not None
        assert {j.id for j in await backend.get_by_bundle("b1")} == {recent.id, records[2].id}

    async def test_nothing_to_reap(self, backend):
        assert await backend.reap(utcnow()) == 0


class TestLeases:
    async def test_claim_is_held_until_the_lease_lapses(self, backend):
        await backend.add(_record())
        now = utcnow()
        (job,) = await backend.claim(1, now)

        within = now + timedelta(seconds=backend.lease_seconds - 1)
        assert await backend.recover_stalled(within) == []
        assert (await backend.get(job.id)).status == JobStatus.ACTIVE

    async def test_lapsed_claim_is_requeued(self, backend):
        await backend.add(_record())
        now = utcnow()
        (job,) = await backend.claim(1, now)
        await backend.update_progress(job.id, 40)

        later = now + timedelta(seconds=backend.lease_seconds + 1)
        (released,) = await backend.recover_stalled(later)

        assert released.id == job.id
        assert released.status == JobStatus.WAITING
        assert released.error == STALLED_ERROR
        assert released.progress == 0
        assert released.attempts == 1
        assert (await backend.counts())["waiting"] == 1
        assert (await backend.counts())["active"] == 0

        (again,) = await backend.claim(1, later)
        assert again.id == job.id
        assert again.attempts == 2

    async def test_lapsed_claim_without_attempts_left_fails(self, backend):
        await backend.add(_record(max_attempts=1))
        now = utcnow()
        (job,) = await backend.claim(1, now)

        (released,) = await backend.recover_stalled(now + timedelta(seconds=backend.lease_seconds + 1))

        assert released.status == JobStatus.FAILED
        assert released.error == STALLED_ERROR
        assert released.completed_at is not None
        assert await backend.claim(1, now + timedelta(days=1)) == []

    async def test_renewal_pushes_the_deadline_out(self, backend):
        await backend.add(_record())
        now = utcnow()
        (job,) = await backend.claim(1, now)
        lease = timedelta(seconds=backend.lease_seconds)

        assert await backend.renew_leases([job.id], now + lease / 2) == 1

        assert await backend.recover_stalled(now + lease + timedelta(seconds=1)) == []
        assert len(await backend.recover_stalled(now + lease * 2)) == 1

    async def test_renewal_ignores_jobs_that_are_not_active(self, backend):
        waiting = _record()
        await backend.add(waiting)

        assert await backend.renew_leases([waiting.id, "missing"], utcnow()) == 0
        assert await backend.recover_stalled(utcnow() + timedelta(days=1)) == []
