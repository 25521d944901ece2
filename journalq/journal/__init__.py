"""
Journal entry processing on top of the job queue.
"""

from journalq.journal.bundle import BUNDLE_PLAN, submit_journal_bundle
from journalq.journal.handlers import (
    ANALYZE,
    BATCH_ANALYSIS,
    CHECK_REWARDS,
    SCORE,
    UPDATE_MEMORY_LOOP,
    UPDATE_PROGRESS,
    JournalHandlers,
    register_journal_handlers,
)

__all__ = [
    "ANALYZE",
    "SCORE",
    "UPDATE_PROGRESS",
    "CHECK_REWARDS",
    "UPDATE_MEMORY_LOOP",
    "BATCH_ANALYSIS",
    "BUNDLE_PLAN",
    "JournalHandlers",
    "register_journal_handlers",
    "submit_journal_bundle",
]
