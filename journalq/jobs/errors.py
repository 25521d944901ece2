"""
Exceptions raised by the job subsystem and by job handlers.

Handlers signal how a failure should be treated by raising
``RetryableJobError`` or ``NonRetryableJobError``; anything else is
classified by ``RetryPolicy``.
"""


class QueueError(Exception):
    """Base class for queue errors."""
    pass


class JobNotFoundError(QueueError):
    """Raised when a worker-side mutation targets an unknown job id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class RetryableJobError(QueueError):
    """Transient failure: timeouts, resets, upstream 5xx or rate limiting."""
    pass


class NonRetryableJobError(QueueError):
    """Permanent failure: malformed payload, validation or authorization."""
    pass


class HandlerNotRegisteredError(NonRetryableJobError):
    """A job was claimed whose type has no registered handler."""

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type
