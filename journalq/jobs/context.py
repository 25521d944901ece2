"""
Access to the job being executed, from inside a handler.

Handlers are plain ``(payload) -> result`` callables. Those that want to
report progress ask for the current job:

    from journalq.jobs.context import get_current_job

    async def analyze(payload):
        job = get_current_job()
        ...
        job.set_progress(50)

Works from async handlers and from sync handlers run in a worker thread
(``asyncio.to_thread`` copies the context).
"""

import asyncio
import concurrent.futures
import contextvars
from typing import TYPE_CHECKING, List, Optional, Union

from journalq.jobs.events import JobEvent
from journalq.jobs.models import JobRecord
from journalq.utils.logging import worker_logger as logger

if TYPE_CHECKING:
    from journalq.jobs.queue import QueueService


_current_job: contextvars.ContextVar[Optional["JobContext"]] = contextvars.ContextVar(
    "journalq_current_job", default=None
)

# Handler-reported progress stops short of 100; completion sets 100
MAX_HANDLER_PROGRESS = 99


class JobContext:
    """Handle given to a running handler for its own job."""

    def __init__(
        self,
        record: JobRecord,
        queue: "QueueService",
        loop: asyncio.AbstractEventLoop
    ):
        self.record = record
        self._queue = queue
        self._loop = loop
        self._progress = 0
        self._write_lock = asyncio.Lock()
        self._pending: List[Union[asyncio.Task, concurrent.futures.Future]] = []

    @property
    def job_id(self) -> str:
        return self.record.id

    @property
    def progress(self) -> int:
        return self._progress

    def set_progress(self, value: int):
        """Record progress (0-99). Decreases within an attempt are ignored."""
        value = max(0, min(MAX_HANDLER_PROGRESS, int(value)))
        if value <= self._progress:
            return
        self._progress = value
        self.record.progress = value

        coro = self._persist(value)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._pending.append(self._loop.create_task(coro))
        else:
            self._pending.append(asyncio.run_coroutine_threadsafe(coro, self._loop))

    async def flush(self):
        """Wait until every reported progress value has been written."""
        pending, self._pending = self._pending, []
        for future in pending:
            if isinstance(future, concurrent.futures.Future):
                future = asyncio.wrap_future(future)
            await future

    async def _persist(self, value: int):
        # Writes land in call order so a stale value never overwrites a newer one
        async with self._write_lock:
            await self._write(value)

    async def _write(self, value: int):
        try:
            if await self._queue.update_progress(self.record.id, value):
                await self._queue.events.emit(JobEvent.PROGRESS, self.record)
        except Exception as e:
            logger.warning("Failed to record job progress", job_id=self.record.id, error=str(e))


def get_current_job() -> Optional[JobContext]:
    """The job executing in this context, or None outside a handler."""
    return _current_job.get()


def bind_job(context: JobContext) -> contextvars.Token:
    return _current_job.set(context)


def unbind_job(token: contextvars.Token):
    _current_job.reset(token)
