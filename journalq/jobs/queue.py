"""
Job queue facade.
The only entry point producers use; hides which backend is active.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from journalq.config import AppConfig, config as default_config
from journalq.jobs.backend import QueueBackend
from journalq.jobs.errors import JobNotFoundError
from journalq.jobs.events import EventChannel, JobEvent
from journalq.jobs.memory_backend import MemoryQueueBackend
from journalq.jobs.models import (
    JobOptions,
    JobRecord,
    JobStatus,
    new_job_id,
    utcnow,
)
from journalq.jobs.probe import probe_durable_backend
from journalq.jobs.redis_backend import RedisQueueBackend
from journalq.utils.logging import queue_logger as logger


class QueueService:
    """
    High-level interface for the job queue.

    Construct one per process during startup and pass it to producers and
    to the worker pool:

        queue = QueueService(settings)
        await queue.initialize()

        job_id = await queue.enqueue("analyze", {"entry_id": "e1", ...})
        record = await queue.get_status(job_id)

        await queue.close()
    """

    def __init__(
        self,
        settings: Optional[AppConfig] = None,
        backend: Optional[QueueBackend] = None,
        events: Optional[EventChannel] = None
    ):
        self.settings = settings or default_config
        self.events = events or EventChannel()
        self._backend = backend
        self._initialized = False
        self._reaper: Optional[AsyncIOScheduler] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self):
        """
        Select and connect the backend, then start the reaper.

        Backend selection happens once: Redis if the probe succeeds,
        otherwise the in-process fallback. Never raises on Redis trouble.
        """
        if self._initialized:
            return

        if self._backend is None:
            self._backend = await self._select_backend()

        await self._backend.connect()
        self._start_reaper()
        self._initialized = True

        logger.info(
            "Queue initialized",
            backend=self._backend.name,
            durable=self._backend.durable,
        )

    async def _select_backend(self) -> QueueBackend:
        client = await probe_durable_backend(
            self.settings.REDIS_URL,
            timeout=self.settings.REDIS_CONNECT_TIMEOUT,
        )
        if client is not None:
            return RedisQueueBackend(
                client,
                prefix=self.settings.QUEUE_KEY_PREFIX,
                lease_seconds=self.settings.JOB_LEASE_SECONDS,
            )
        return MemoryQueueBackend(
            self.settings.FALLBACK_DB_PATH,
            lease_seconds=self.settings.JOB_LEASE_SECONDS,
        )

    def _start_reaper(self):
        self._reaper = AsyncIOScheduler()
        self._reaper.add_job(
            self.reap,
            trigger=IntervalTrigger(seconds=self.settings.REAPER_INTERVAL_SECONDS),
            id="job_reaper",
            name="Remove expired terminal jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._reaper.start()

    async def close(self):
        """Stop the reaper and release backend connections"""
        if self._reaper is not None:
            if self._reaper.running:
                self._reaper.shutdown(wait=False)
            self._reaper = None

        if self._initialized:
            await self._backend.close()
            self._initialized = False
            logger.info("Queue closed")

    @property
    def backend(self) -> QueueBackend:
        if self._backend is None:
            raise RuntimeError("QueueService.initialize() has not been called")
        return self._backend

    @property
    def backend_name(self) -> str:
        return self.backend.name

    @property
    def is_durable(self) -> bool:
        return self.backend.durable

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    # =========================================================================
    # Producer API
    # =========================================================================

    async def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None
    ) -> str:
        """
        Queue a new job. Returns immediately; never waits on execution.

        Args:
            job_type: Name of the registered handler that will process it
            payload: JSON-compatible dict handed to the handler unmodified
            options: attempts / backoff_base / bundle_id / delay overrides

        Returns:
            job_id: Unique identifier for tracking the job
        """
        if not job_type or not job_type.strip():
            raise ValueError("job_type cannot be empty")
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")

        await self._ensure_initialized()
        options = options or JobOptions()

        now = utcnow()
        record = JobRecord(
            id=new_job_id(),
            type=job_type,
            payload=payload,
            max_attempts=options.attempts or self.settings.JOB_DEFAULT_ATTEMPTS,
            backoff_base=options.backoff_base,
            created_at=now,
            not_before=now + timedelta(seconds=options.delay) if options.delay else None,
            bundle_id=options.bundle_id,
        )
        await self._backend.add(record)

        logger.info(
            "Job added to queue",
            job_id=record.id,
            type=job_type,
            bundle_id=record.bundle_id,
            backend=self._backend.name,
        )
        return record.id

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        """Current record for ``job_id``, or None if unknown (or reaped)."""
        await self._ensure_initialized()
        return await self._backend.get(job_id)

    async def get_jobs_by_state(self, states: Iterable[JobStatus | str]) -> List[JobRecord]:
        await self._ensure_initialized()
        return await self._backend.get_by_states({JobStatus(s) for s in states})

    async def get_bundle_jobs(self, bundle_id: str) -> List[JobRecord]:
        await self._ensure_initialized()
        return await self._backend.get_by_bundle(bundle_id)

    async def stats(self) -> Dict[str, Any]:
        await self._ensure_initialized()
        counts = await self._backend.counts()
        return {
            "backend": self._backend.name,
            "durable": self._backend.durable,
            "total": sum(counts.values()),
            **counts,
        }

    async def reap(self) -> int:
        """Delete terminal jobs older than the retention window."""
        cutoff = utcnow() - timedelta(seconds=self.settings.JOB_RETENTION_SECONDS)
        removed = await self._backend.reap(cutoff)
        if removed:
            logger.info("Cleaned up old jobs", removed=removed)
        return removed

    # =========================================================================
    # Worker API
    # =========================================================================

    async def claim(self, limit: int) -> List[JobRecord]:
        """Release stalled claims, then take up to ``limit`` eligible jobs."""
        await self._ensure_initialized()
        now = utcnow()
        await self.recover_stalled(now)
        return await self._backend.claim(limit, now)

    async def renew_leases(self, job_ids: Iterable[str]) -> int:
        """Keep the claims of jobs this process is still running."""
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        return await self._backend.renew_leases(job_ids, utcnow())

    async def recover_stalled(self, now: Optional[datetime] = None) -> List[JobRecord]:
        """
        Release active jobs whose worker stopped renewing them.

        Released jobs go back to waiting, or to failed when no attempts
        remain, and are announced as retry or failed events.
        """
        await self._ensure_initialized()
        released = await self._backend.recover_stalled(now or utcnow())
        for record in released:
            logger.warning(
                "Recovered stalled job",
                job_id=record.id,
                type=record.type,
                status=record.status.value,
                attempts=record.attempts,
            )
            event = JobEvent.FAILED if record.status == JobStatus.FAILED else JobEvent.RETRY
            await self.events.emit(event, record)
        return released

    async def update_progress(self, job_id: str, progress: int) -> bool:
        progress = max(0, min(100, int(progress)))
        return await self._backend.update_progress(job_id, progress)

    async def complete(self, job_id: str, result: Any) -> JobRecord:
        record = await self._backend.mark_completed(job_id, result, utcnow())
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    async def schedule_retry(self, job_id: str, error: str, delay: float) -> JobRecord:
        not_before = utcnow() + timedelta(seconds=max(0.0, delay))
        record = await self._backend.mark_retry(job_id, error, not_before)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    async def fail(self, job_id: str, error: str) -> JobRecord:
        record = await self._backend.mark_failed(job_id, error, utcnow())
        if record is None:
            raise JobNotFoundError(job_id)
        return record
