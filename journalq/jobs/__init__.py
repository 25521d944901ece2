"""
Background job queue.

Components:
- QueueService: producer-facing facade; picks Redis or the in-process fallback
- WorkerPool: polls the queue and runs registered handlers
- RetryPolicy: failure classification and exponential backoff
- BundleStatusAggregator: combined status for jobs sharing a bundle id
- EventChannel: lifecycle notifications (started, progress, completed, failed, retry)

Usage:
    # At startup
    from journalq.jobs import QueueService, WorkerPool
    queue = QueueService()
    await queue.initialize()

    pool = WorkerPool(queue)

    @pool.handler("echo")
    async def echo(payload):
        return payload["text"].upper()

    pool.start()

    # In an API endpoint - queue a job
    job_id = await queue.enqueue("echo", {"text": "hello"})

    # Check job status
    record = await queue.get_status(job_id)
"""

from journalq.jobs.bundles import BundleStatus, BundleStatusAggregator
from journalq.jobs.context import JobContext, get_current_job
from journalq.jobs.errors import (
    HandlerNotRegisteredError,
    JobNotFoundError,
    NonRetryableJobError,
    QueueError,
    RetryableJobError,
)
from journalq.jobs.events import EventChannel, JobEvent
from journalq.jobs.models import JobOptions, JobRecord, JobStatus
from journalq.jobs.queue import QueueService
from journalq.jobs.retry import RetryPolicy
from journalq.jobs.worker import WorkerPool

__all__ = [
    # Records
    "JobOptions",
    "JobRecord",
    "JobStatus",

    # Queue
    "QueueService",
    "BundleStatus",
    "BundleStatusAggregator",

    # Worker
    "WorkerPool",
    "RetryPolicy",
    "JobContext",
    "get_current_job",

    # Events
    "EventChannel",
    "JobEvent",

    # Errors
    "QueueError",
    "JobNotFoundError",
    "RetryableJobError",
    "NonRetryableJobError",
    "HandlerNotRegisteredError",
]
