"""
Push notifications for job lifecycle events.

``NotificationHub`` listens on an EventChannel and fans each event out to
subscriber queues. The SSE endpoint holds one subscription per client.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol, Set

from journalq.jobs.events import EventChannel, JobEvent
from journalq.jobs.models import JobRecord
from journalq.utils.logging import get_logger

logger = get_logger("notifications")


class NotificationChannel(Protocol):
    async def publish(self, message: Dict[str, Any]):
        ...


def event_message(event: JobEvent, job: JobRecord) -> Dict[str, Any]:
    message = {
        "event": event.value,
        "job_id": job.id,
        "type": job.type,
        "status": job.status.value,
        "progress": job.progress,
        "attempts": job.attempts,
    }
    if job.bundle_id:
        message["bundle_id"] = job.bundle_id
    if event == JobEvent.COMPLETED:
        message["result"] = job.result
    if job.error and event in (JobEvent.FAILED, JobEvent.RETRY):
        message["error"] = job.error
    return message


class NotificationHub:
    """In-process fan-out of event messages to subscriber queues."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._detach: Optional[Callable[[], None]] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def attach(self, events: EventChannel):
        """Start forwarding every lifecycle event from ``events``."""
        self.detach()

        async def forward(event: JobEvent, job: JobRecord):
            await self.publish(event_message(event, job))

        self._detach = events.subscribe_all(forward)

    def detach(self):
        if self._detach is not None:
            self._detach()
            self._detach = None

    async def publish(self, message: Dict[str, Any]):
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                # Slow consumer; drop the oldest message to make room
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                queue.put_nowait(message)
                logger.debug("Subscriber queue full, dropped oldest message")

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
