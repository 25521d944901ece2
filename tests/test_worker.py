from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from journalq.jobs.context import get_current_job
from journalq.jobs.errors import NonRetryableJobError, RetryableJobError
from journalq.jobs.events import JobEvent
from journalq.jobs.models import JobOptions, JobStatus, utcnow
from journalq.jobs.retry import RetryPolicy
from journalq.jobs.worker import WorkerPool

from helpers import run_until_settled


def _record_events(queue):
    events = []
    queue.events.subscribe_all(lambda event, job: events.append((event, job.id)))
    return events


class TestRegistry:
    def test_register_and_decorator(self, pool):
        pool.register("b", lambda payload: None)

        @pool.handler("a")
        async def handler(payload):
            return payload

        assert pool.registered_types == ["a", "b"]
        assert handler.__name__ == "handler"

    def test_rejects_bad_registrations(self, pool):
        with pytest.raises(ValueError):
            pool.register("", lambda payload: None)
        with pytest.raises(TypeError):
            pool.register("x", "not callable")

    def test_rejects_bad_configuration(self, queue):
        with pytest.raises(ValueError):
            WorkerPool(queue, concurrency=0)
        with pytest.raises(ValueError):
            WorkerPool(queue, poll_interval=0)


class TestSuccess:
    async def test_echo_job_completes(self, queue, pool):
        @pool.handler("echo")
        async def echo(payload):
            return payload["text"].upper()

        events = _record_events(queue)
        job_id = await queue.enqueue("echo", {"text": "hello"})

        await run_until_settled(pool)

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.result == "HELLO"
        assert record.progress == 100
        assert record.attempts == 1
        assert record.error is None
        assert [e for e, _ in events] == [JobEvent.STARTED, JobEvent.COMPLETED]

    async def test_sync_handler_runs_in_a_thread(self, queue, pool):
        threads = []

        def blocking(payload):
            threads.append(threading.get_ident())
            time.sleep(0.01)
            return {"n": payload["n"] * 2}

        pool.register("double", blocking)
        job_id = await queue.enqueue("double", {"n": 21})

        await run_until_settled(pool)

        assert (await queue.get_status(job_id)).result == {"n": 42}
        assert threads and threads[0] != threading.get_ident()

    async def test_fifo_order_within_process(self, queue):
        pool = WorkerPool(queue, retry_policy=RetryPolicy(base_delay=0, jitter=0), concurrency=1)
        order = []

        @pool.handler("note")
        async def note(payload):
            order.append(payload["n"])

        for n in range(5):
            await queue.enqueue("note", {"n": n})

        await run_until_settled(pool)
        assert order == [0, 1, 2, 3, 4]


class TestRetries:
    async def test_transient_failures_then_success(self, queue, pool):
        calls = {"count": 0}

        @pool.handler("flaky")
        async def flaky(payload):
            calls["count"] += 1
            if calls["count"] <= 2:
                raise RetryableJobError("upstream timeout")
            return "ok"

        events = _record_events(queue)
        job_id = await queue.enqueue("flaky", {}, JobOptions(attempts=3, backoff_base=0))

        await run_until_settled(pool)

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.result == "ok"
        assert record.attempts == 3
        assert [e for e, _ in events].count(JobEvent.RETRY) == 2

    async def test_exhausted_retries_fail(self, queue, pool):
        @pool.handler("always_down")
        async def always_down(payload):
            raise ConnectionError("connection refused")

        events = _record_events(queue)
        job_id = await queue.enqueue("always_down", {}, JobOptions(attempts=2, backoff_base=0))

        await run_until_settled(pool)

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 2
        assert "connection refused" in record.error
        assert [e for e, _ in events] == [
            JobEvent.STARTED, JobEvent.RETRY, JobEvent.STARTED, JobEvent.FAILED,
        ]

    async def test_non_retryable_failure_fails_immediately(self, queue, pool):
        @pool.handler("strict")
        async def strict(payload):
            raise NonRetryableJobError("entry_text is required")

        job_id = await queue.enqueue("strict", {}, JobOptions(attempts=5))

        await run_until_settled(pool)

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 1
        assert record.error == "entry_text is required"

    async def test_unregistered_type_fails_without_retry(self, queue, pool):
        job_id = await queue.enqueue("mystery", {})

        await run_until_settled(pool)

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 1
        assert "mystery" in record.error

    async def test_retry_waits_for_backoff(self, queue):
        pool = WorkerPool(queue, retry_policy=RetryPolicy(base_delay=30.0, jitter=0))

        @pool.handler("slow_retry")
        async def slow_retry(payload):
            raise TimeoutError()

        job_id = await queue.enqueue("slow_retry", {}, JobOptions(attempts=3))
        await pool.process_jobs()
        await pool.drain()

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.WAITING
        assert record.error == "TimeoutError"

        # Not eligible again until the backoff has passed
        await pool.process_jobs()
        await pool.drain()
        assert (await queue.get_status(job_id)).attempts == 1

    async def test_unserializable_result_fails_job(self, queue, pool):
        @pool.handler("weird")
        async def weird(payload):
            return object()

        job_id = await queue.enqueue("weird", {})
        await run_until_settled(pool)

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 1
        assert "Unserializable result" in record.error


class TestConcurrency:
    async def test_concurrency_limit_is_never_exceeded(self, queue):
        pool = WorkerPool(queue, concurrency=3)
        running = 0
        peak = 0

        @pool.handler("sleepy")
        async def sleepy(payload):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1

        for n in range(10):
            await queue.enqueue("sleepy", {"n": n})

        for _ in range(40):
            await pool.process_jobs()
            assert pool.active_count <= 3
            await asyncio.sleep(0.01)
        await pool.drain(timeout=5)

        assert peak == 3
        done = await queue.get_jobs_by_state([JobStatus.COMPLETED])
        assert len(done) == 10

    async def test_full_pool_claims_nothing(self, queue):
        pool = WorkerPool(queue, concurrency=1)
        release = asyncio.Event()

        @pool.handler("hold")
        async def hold(payload):
            await release.wait()

        first = await queue.enqueue("hold", {})
        second = await queue.enqueue("hold", {})

        await pool.process_jobs()
        await asyncio.sleep(0)
        assert pool.active_count == 1
        assert pool.is_processing

        await pool.process_jobs()
        assert (await queue.get_status(second)).status == JobStatus.WAITING

        release.set()
        await run_until_settled(pool)
        assert (await queue.get_status(first)).status == JobStatus.COMPLETED
        assert (await queue.get_status(second)).status == JobStatus.COMPLETED

    async def test_slow_job_does_not_block_others(self, queue):
        pool = WorkerPool(queue, concurrency=2)
        release = asyncio.Event()

        @pool.handler("slow")
        async def slow(payload):
            await release.wait()

        @pool.handler("fast")
        async def fast(payload):
            return "quick"

        slow_id = await queue.enqueue("slow", {})
        fast_id = await queue.enqueue("fast", {})

        await pool.process_jobs()
        for _ in range(20):
            if (await queue.get_status(fast_id)).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)

        assert (await queue.get_status(fast_id)).status == JobStatus.COMPLETED
        assert (await queue.get_status(slow_id)).status == JobStatus.ACTIVE
        release.set()
        await pool.drain(timeout=5)


class TestProgress:
    async def test_progress_from_async_handler(self, queue, pool):
        seen = []

        @pool.handler("steps")
        async def steps(payload):
            job = get_current_job()
            job.set_progress(30)
            job.set_progress(10)   # ignored: lower than before
            job.set_progress(150)  # clamped to 99
            await asyncio.sleep(0.01)
            seen.append((await queue.get_status(job.job_id)).progress)
            return "done"

        events = _record_events(queue)
        job_id = await queue.enqueue("steps", {})
        await run_until_settled(pool)

        assert seen == [99]
        assert (await queue.get_status(job_id)).progress == 100
        assert [e for e, _ in events].count(JobEvent.PROGRESS) == 2

    async def test_progress_from_sync_handler(self, queue, pool):
        def steps(payload):
            job = get_current_job()
            job.set_progress(50)
            time.sleep(0.05)
            return job.progress

        job_id = await queue.enqueue("steps", {})
        pool.register("steps", steps)
        await run_until_settled(pool)

        record = await queue.get_status(job_id)
        assert record.result == 50
        assert record.progress == 100

    async def test_no_current_job_outside_handlers(self):
        assert get_current_job() is None


class TestListenerFailures:
    async def test_broken_listener_does_not_affect_job(self, queue, pool):
        def broken(event, job):
            raise RuntimeError("listener bug")

        queue.events.subscribe_all(broken)
        pool.register("echo", lambda payload: "fine")

        job_id = await queue.enqueue("echo", {})
        await run_until_settled(pool)
        assert (await queue.get_status(job_id)).status == JobStatus.COMPLETED


class TestLifecycle:
    async def test_start_polls_on_its_own(self, queue):
        pool = WorkerPool(queue, poll_interval=0.05)
        pool.register("echo", lambda payload: payload["text"])
        job_id = await queue.enqueue("echo", {"text": "scheduled"})

        pool.start()
        try:
            for _ in range(100):
                if (await queue.get_status(job_id)).status == JobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.02)
        finally:
            await pool.shutdown(wait=True, timeout=5)

        assert (await queue.get_status(job_id)).result == "scheduled"
        assert not pool.scheduler.running

    async def test_shutdown_waits_for_in_flight_jobs(self, queue):
        pool = WorkerPool(queue)

        @pool.handler("short")
        async def short(payload):
            await asyncio.sleep(0.05)
            return "finished"

        job_id = await queue.enqueue("short", {})
        await pool.process_jobs()
        await pool.shutdown(wait=True, timeout=5)

        assert (await queue.get_status(job_id)).status == JobStatus.COMPLETED

    async def test_drain_timeout(self, queue):
        pool = WorkerPool(queue)
        release = asyncio.Event()

        @pool.handler("hold")
        async def hold(payload):
            await release.wait()

        await queue.enqueue("hold", {})
        await pool.process_jobs()
        assert await pool.drain(timeout=0.05) is False

        release.set()
        assert await pool.drain(timeout=5) is True


class TestLeases:
    async def test_running_jobs_keep_their_claim(self, queue):
        pool = WorkerPool(queue, concurrency=1)
        release = asyncio.Event()

        @pool.handler("hold")
        async def hold(payload):
            await release.wait()
            return "held"

        job_id = await queue.enqueue("hold", {})
        await pool.process_jobs()
        await asyncio.sleep(0)
        assert pool.active_count == 1

        lease = queue.backend.lease_seconds
        with patch("journalq.jobs.queue.utcnow", return_value=utcnow() + timedelta(seconds=lease * 0.75)):
            await pool.process_jobs()

        # Past the first deadline but inside the renewed one
        assert await queue.recover_stalled(utcnow() + timedelta(seconds=lease * 1.5)) == []
        assert (await queue.get_status(job_id)).status == JobStatus.ACTIVE

        release.set()
        await pool.drain(timeout=5)

        record = await queue.get_status(job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.attempts == 1
        assert record.result == "held"

    async def test_finished_jobs_stop_being_renewed(self, queue, pool):
        pool.register("echo", lambda payload: payload)
        await queue.enqueue("echo", {})

        await run_until_settled(pool)

        with patch.object(queue, "renew_leases", wraps=queue.renew_leases) as renew:
            await pool.process_jobs()
        renew.assert_not_called()
