"""
Job lifecycle events.

Listeners subscribe per event (or to all events) and receive
``(event, job)``. A listener that raises is logged and skipped; it never
affects the job or the other listeners.
"""

import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from journalq.jobs.models import JobRecord
from journalq.utils.logging import AppLogger, queue_logger


class JobEvent(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


Listener = Callable[[JobEvent, JobRecord], Any]


class EventChannel:
    """Observer registry for job lifecycle notifications."""

    def __init__(self):
        self._listeners: Dict[JobEvent, List[Listener]] = {event: [] for event in JobEvent}

    def subscribe(self, event: JobEvent | str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for one event. Returns an unsubscribe callable."""
        event = JobEvent(event)
        self._listeners[event].append(listener)

        def unsubscribe():
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        unsubscribers = [self.subscribe(event, listener) for event in JobEvent]

        def unsubscribe():
            for unsub in unsubscribers:
                unsub()

        return unsubscribe

    def listener_count(self, event: Optional[JobEvent] = None) -> int:
        if event is not None:
            return len(self._listeners[JobEvent(event)])
        return sum(len(listeners) for listeners in self._listeners.values())

    async def emit(self, event: JobEvent | str, job: JobRecord):
        event = JobEvent(event)
        for listener in list(self._listeners[event]):
            try:
                outcome = listener(event, job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                queue_logger.error(
                    "Event listener failed",
                    event=event.value,
                    job_id=job.id,
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(e),
                )

    def attach_logging(self, logger: Optional[AppLogger] = None) -> Callable[[], None]:
        """Write every lifecycle event to the job log."""
        logger = logger or queue_logger

        def log_event(event: JobEvent, job: JobRecord):
            metadata = {
                "job_id": job.id,
                "type": job.type,
                "attempt": job.attempts,
                "max_attempts": job.max_attempts,
            }
            if job.bundle_id:
                metadata["bundle_id"] = job.bundle_id

            if event == JobEvent.FAILED:
                logger.error("Job failed permanently", error=job.error, **metadata)
            elif event == JobEvent.RETRY:
                logger.warning("Job failed, will retry", error=job.error, **metadata)
            elif event == JobEvent.PROGRESS:
                logger.debug("Job progress", progress=job.progress, **metadata)
            else:
                logger.info(f"Job {event.value}", **metadata)

        return self.subscribe_all(log_event)
