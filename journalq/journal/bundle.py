"""
Fan a journal entry out into a bundle of processing jobs.
"""

import uuid
from typing import Dict, List

from journalq.jobs.models import JobOptions
from journalq.jobs.queue import QueueService
from journalq.journal.handlers import (
    ANALYZE,
    CHECK_REWARDS,
    SCORE,
    UPDATE_MEMORY_LOOP,
    UPDATE_PROGRESS,
)
from journalq.utils.logging import get_logger

logger = get_logger("journal")


# (job type, options) per bundle member; bundle_id is filled in per call
BUNDLE_PLAN = (
    (ANALYZE, {"attempts": 3, "backoff_base": 2.0}),
    (SCORE, {"attempts": 2, "backoff_base": 1.0}),
    (UPDATE_PROGRESS, {"attempts": 2, "delay": 5.0}),
    (CHECK_REWARDS, {"attempts": 1, "delay": 10.0}),
    (UPDATE_MEMORY_LOOP, {"attempts": 2, "delay": 8.0}),
)


def new_bundle_id() -> str:
    return f"bundle_{uuid.uuid4().hex}"


async def submit_journal_bundle(
    queue: QueueService,
    entry_id: str,
    user_id: str,
    entry_text: str
) -> Dict[str, object]:
    """
    Enqueue every job in BUNDLE_PLAN for one entry.

    Returns:
        {"bundle_id": ..., "jobs": [{"job_id": ..., "type": ...}, ...]}
    """
    for name, value in (("entry_id", entry_id), ("user_id", user_id), ("entry_text", entry_text)):
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{name} cannot be empty")

    bundle_id = new_bundle_id()
    payload = {"entry_id": entry_id, "user_id": user_id, "entry_text": entry_text}

    jobs: List[Dict[str, str]] = []
    for job_type, options in BUNDLE_PLAN:
        job_id = await queue.enqueue(
            job_type,
            dict(payload),
            JobOptions(bundle_id=bundle_id, **options),
        )
        jobs.append({"job_id": job_id, "type": job_type})

    logger.info("Journal bundle queued", bundle_id=bundle_id, entry_id=entry_id, jobs=len(jobs))
    return {"bundle_id": bundle_id, "jobs": jobs}
