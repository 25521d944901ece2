"""
Bundle status aggregation.
Read-only view over every job sharing a bundle id.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from journalq.jobs.models import JobRecord, JobStatus
from journalq.jobs.queue import QueueService


BUNDLE_COMPLETED = "completed"
BUNDLE_PARTIAL_FAILURE = "partial_failure"
BUNDLE_PROCESSING = "processing"


@dataclass
class BundleJob:
    job_id: str
    type: str
    status: str
    progress: int
    result: Any = None
    error: Optional[str] = None


@dataclass
class BundleStatus:
    bundle_id: str
    overall_progress: int
    status: str
    jobs: List[BundleJob] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize_bundle(bundle_id: str, records: List[JobRecord]) -> Optional[BundleStatus]:
    """Fold job records into a BundleStatus; None for an empty bundle."""
    if not records:
        return None

    total = len(records)
    completed = sum(1 for r in records if r.status == JobStatus.COMPLETED)
    failed = sum(1 for r in records if r.status == JobStatus.FAILED)

    if completed == total:
        status = BUNDLE_COMPLETED
    elif all(r.is_terminal for r in records):
        status = BUNDLE_PARTIAL_FAILURE
    else:
        status = BUNDLE_PROCESSING

    return BundleStatus(
        bundle_id=bundle_id,
        overall_progress=round(100 * completed / total),
        status=status,
        jobs=[
            BundleJob(
                job_id=r.id,
                type=r.type,
                status=r.status.value,
                progress=r.progress,
                result=r.result,
                error=r.error,
            )
            for r in records
        ],
        summary={
            "total": total,
            "completed": completed,
            "failed": failed,
            "processing": total - completed - failed,
        },
    )


class BundleStatusAggregator:
    """Combines the jobs of a bundle into one status report."""

    def __init__(self, queue: QueueService):
        self.queue = queue

    async def get_bundle_status(self, bundle_id: str) -> Optional[BundleStatus]:
        records = await self.queue.get_bundle_jobs(bundle_id)
        return summarize_bundle(bundle_id, records)
