"""
Worker pool for queued jobs.
Polls the queue on a fixed interval and runs handlers concurrently.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from journalq.jobs.context import JobContext, bind_job, unbind_job
from journalq.jobs.errors import HandlerNotRegisteredError, JobNotFoundError
from journalq.jobs.events import JobEvent
from journalq.jobs.models import JobRecord
from journalq.jobs.queue import QueueService
from journalq.jobs.retry import RetryPolicy
from journalq.utils.logging import worker_logger as logger


Handler = Callable[[Dict[str, Any]], Any]


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class WorkerPool:
    """
    Runs registered handlers for claimed jobs.

    Each tick claims up to ``concurrency - active_count`` jobs and runs each
    one on its own task, so a slow job never blocks the others. Outcomes go
    back through the queue facade and out through its event channel.
    """

    def __init__(
        self,
        queue: QueueService,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 3,
        poll_interval: float = 1.0
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self.queue = queue
        self.retry_policy = retry_policy or RetryPolicy.from_config(queue.settings)
        self.concurrency = concurrency
        self.poll_interval = poll_interval

        self.scheduler = AsyncIOScheduler()
        self._handlers: Dict[str, Handler] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._running_ids: Set[str] = set()
        self._is_processing = False  # A tick is claiming right now

    # =========================================================================
    # Handler registry
    # =========================================================================

    def register(self, job_type: str, handler: Handler):
        if not job_type:
            raise ValueError("job_type cannot be empty")
        if not callable(handler):
            raise TypeError(f"handler for {job_type!r} is not callable")
        if job_type in self._handlers:
            logger.warning("Replacing job handler", type=job_type)
        self._handlers[job_type] = handler

    def handler(self, job_type: str) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""
        def decorator(func: Handler) -> Handler:
            self.register(job_type, func)
            return func
        return decorator

    @property
    def registered_types(self) -> List[str]:
        return sorted(self._handlers)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_jobs(self):
        """
        One polling tick.
        Called by the scheduler every poll_interval seconds.
        """
        if self._is_processing:
            return

        self._is_processing = True
        try:
            # Claims of running jobs lapse unless renewed every tick
            if self._running_ids:
                await self.queue.renew_leases(self._running_ids)

            capacity = self.concurrency - self.active_count
            if capacity <= 0:
                return

            claimed = await self.queue.claim(capacity)
            for job in claimed:
                task = asyncio.create_task(self._run(job), name=f"job-{job.id}")
                self._tasks.add(task)
                self._running_ids.add(job.id)
                task.add_done_callback(self._tasks.discard)
                task.add_done_callback(lambda _, job_id=job.id: self._running_ids.discard(job_id))

            if claimed:
                logger.debug("Claimed jobs", count=len(claimed), active=self.active_count)

        except Exception as e:
            logger.exception("Worker tick failed", error=str(e))
        finally:
            self._is_processing = False

    async def _run(self, job: JobRecord):
        try:
            await self.queue.events.emit(JobEvent.STARTED, job)
            try:
                result = await self._execute(job)
            except Exception as e:
                await self._handle_failure(job, e)
                return
            await self._handle_success(job, result)

        except JobNotFoundError as e:
            # Reaped or otherwise taken away while running
            logger.warning("Job vanished before its outcome was recorded", job_id=job.id, error=str(e))
        except Exception as e:
            logger.exception("Failed to record job outcome", job_id=job.id, error=str(e))

    async def _execute(self, job: JobRecord) -> Any:
        handler = self._handlers.get(job.type)
        if handler is None:
            raise HandlerNotRegisteredError(job.type)

        context = JobContext(job, self.queue, asyncio.get_running_loop())
        token = bind_job(context)
        try:
            if inspect.iscoroutinefunction(handler):
                return await handler(job.payload)

            # to_thread copies the context, so get_current_job() works there too
            outcome = await asyncio.to_thread(handler, job.payload)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return outcome
        finally:
            unbind_job(token)
            # Progress writes must not land after the outcome
            await context.flush()

    async def _handle_success(self, job: JobRecord, result: Any):
        try:
            record = await self.queue.complete(job.id, result)
        except (TypeError, ValueError) as e:
            # Result could not be stored; retrying would produce the same value
            logger.error("Job result is not serializable", job_id=job.id, type=job.type, error=str(e))
            record = await self.queue.fail(job.id, f"Unserializable result: {_describe(e)}")
            await self.queue.events.emit(JobEvent.FAILED, record)
            return

        await self.queue.events.emit(JobEvent.COMPLETED, record)

    async def _handle_failure(self, job: JobRecord, error: Exception):
        message = _describe(error)
        retryable = self.retry_policy.is_retryable(error)

        if retryable and job.attempts_remaining > 0:
            delay = self.retry_policy.delay_for(job.attempts, job.backoff_base)
            record = await self.queue.schedule_retry(job.id, message, delay)
            logger.info(
                "Job scheduled for retry",
                job_id=job.id,
                type=job.type,
                attempt=job.attempts,
                delay=round(delay, 3),
            )
            await self.queue.events.emit(JobEvent.RETRY, record)
            return

        record = await self.queue.fail(job.id, message)
        logger.info(
            "Job marked failed",
            job_id=job.id,
            type=job.type,
            attempt=job.attempts,
            retryable=retryable,
        )
        await self.queue.events.emit(JobEvent.FAILED, record)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight jobs. Returns False if the timeout expired first."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not pending

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        """Start polling the queue"""
        self.scheduler.add_job(
            self.process_jobs,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id="job_worker",
            name="Process queued jobs",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping ticks
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            "Worker pool started",
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
            handlers=self.registered_types,
        )

    async def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """Stop polling; optionally let in-flight jobs finish"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if wait:
            finished = await self.drain(timeout)
            if not finished:
                logger.warning("Shutdown timed out with jobs still running", active=self.active_count)

        logger.info("Worker pool stopped")

    @property
    def active_count(self) -> int:
        """Number of jobs currently executing"""
        return sum(1 for task in self._tasks if not task.done())

    @property
    def is_processing(self) -> bool:
        """True while any job is executing or a tick is claiming"""
        return self._is_processing or self.active_count > 0
