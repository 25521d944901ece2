from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from journalq.config import AppConfig
from journalq.jobs.models import JobStatus
from journalq.jobs.worker import WorkerPool


def make_settings(**overrides) -> AppConfig:
    defaults = {
        "REDIS_URL": None,
        "RETRY_BASE_DELAY": 0.0,
        "RETRY_JITTER": 0.0,
        "WORKER_POLL_INTERVAL": 0.05,
        "ANTHROPIC_API_KEY": None,
        "SUPABASE_URL": None,
        "SUPABASE_SERVICE_KEY": None,
    }
    defaults.update(overrides)
    return AppConfig(**defaults)


async def run_until_settled(pool: WorkerPool, ticks: int = 50, pause: float = 0.01):
    """Tick the pool until nothing is waiting or running (or ticks run out)."""
    for _ in range(ticks):
        await pool.process_jobs()
        await pool.drain(timeout=5)
        pending = await pool.queue.get_jobs_by_state([JobStatus.WAITING, JobStatus.ACTIVE])
        if not pending:
            return
        await asyncio.sleep(pause)


class FakeCompletion:
    """CompletionService stand-in returning canned replies per prompt keyword."""

    def __init__(self, replies: Optional[Dict[str, Any]] = None):
        self.replies = replies or {}
        self.calls: List[str] = []

    async def complete_json(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append(prompt)
        for keyword, reply in self.replies.items():
            if keyword in prompt:
                if isinstance(reply, Exception):
                    raise reply
                return reply
        raise AssertionError(f"no canned reply for prompt: {prompt[:60]}")
