"""
Queue backend interface.

Two implementations exist: ``RedisQueueBackend`` (durable, shared by many
processes) and ``MemoryQueueBackend`` (in-process fallback). The facade
picks one at startup and everything else talks to this interface only.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from journalq.jobs.models import JobRecord, JobStatus

# Error recorded on jobs released by recover_stalled
STALLED_ERROR = "Job stalled: its worker stopped renewing the claim"


class QueueBackend(ABC):
    """Storage and coordination substrate for job records."""

    name: str = "abstract"
    durable: bool = False
    lease_seconds: float = 60.0

    @abstractmethod
    async def connect(self):
        """Open connections and create any required structures."""

    @abstractmethod
    async def close(self):
        """Release connections."""

    @abstractmethod
    async def add(self, record: JobRecord):
        """Persist a new record. It is claimable once ``not_before`` has passed."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def get_by_states(self, states: Iterable[JobStatus]) -> List[JobRecord]:
        """Records in any of ``states``, oldest first."""

    @abstractmethod
    async def get_by_bundle(self, bundle_id: str) -> List[JobRecord]:
        """Every record sharing ``bundle_id``, oldest first."""

    @abstractmethod
    async def claim(self, limit: int, now: datetime) -> List[JobRecord]:
        """
        Atomically take up to ``limit`` eligible waiting jobs.

        Eligible means ``status == waiting`` and ``not_before <= now``.
        Jobs are taken oldest ``created_at`` first; each claimed job is
        moved to ``active`` with ``attempts`` incremented, ``started_at``
        set and a lease of ``lease_seconds``. A job is never returned by two
        concurrent claims.
        """

    @abstractmethod
    async def update_progress(self, job_id: str, progress: int) -> bool:
        """Raise progress of an active job. Returns False if nothing changed."""

    @abstractmethod
    async def renew_leases(self, job_ids: List[str], now: datetime) -> int:
        """Push the lease of still-running active jobs out to ``now + lease_seconds``."""

    @abstractmethod
    async def recover_stalled(self, now: datetime) -> List[JobRecord]:
        """
        Release active jobs whose lease ran out before ``now``.

        Their worker stopped renewing them (crashed or was killed). A job
        with attempts left goes back to waiting and is claimable at once;
        an exhausted one is failed. Returns the changed records.
        """

    @abstractmethod
    async def mark_completed(
        self,
        job_id: str,
        result: Any,
        completed_at: datetime
    ) -> Optional[JobRecord]:
        """Active -> completed. Returns None if the job is not active."""

    @abstractmethod
    async def mark_retry(
        self,
        job_id: str,
        error: str,
        not_before: datetime
    ) -> Optional[JobRecord]:
        """Active -> waiting, progress reset, eligible again at ``not_before``."""

    @abstractmethod
    async def mark_failed(
        self,
        job_id: str,
        error: str,
        completed_at: datetime
    ) -> Optional[JobRecord]:
        """Active -> failed (terminal)."""

    @abstractmethod
    async def reap(self, older_than: datetime) -> int:
        """Delete terminal jobs completed before ``older_than``. Returns the count."""

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        """Number of jobs per status value."""
