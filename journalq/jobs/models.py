"""
Job record and enqueue options.

Plain data: the worker pool and the backends own every state transition.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    """Status values for queued jobs"""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class JobOptions:
    """Per-job overrides accepted by ``QueueService.enqueue``."""
    attempts: Optional[int] = None
    backoff_base: Optional[float] = None
    bundle_id: Optional[str] = None
    delay: Optional[float] = None  # seconds before first eligibility

    def __post_init__(self):
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.backoff_base is not None and self.backoff_base < 0:
            raise ValueError("backoff_base must be >= 0")
        if self.delay is not None and self.delay < 0:
            raise ValueError("delay must be >= 0")


@dataclass
class JobRecord:
    """One unit of asynchronous work and its lifecycle state."""
    id: str
    type: str
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    attempts: int = 0
    max_attempts: int = 3
    backoff_base: Optional[float] = None
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    not_before: Optional[datetime] = None
    bundle_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "backoff_base": self.backoff_base,
            "result": self.result,
            "error": self.error,
            "created_at": _dt_to_str(self.created_at),
            "started_at": _dt_to_str(self.started_at),
            "completed_at": _dt_to_str(self.completed_at),
            "not_before": _dt_to_str(self.not_before),
            "bundle_id": self.bundle_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        backoff_base = data.get("backoff_base")
        return cls(
            id=data["id"],
            type=data["type"],
            payload=data.get("payload") or {},
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            progress=int(data.get("progress") or 0),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 3),
            backoff_base=float(backoff_base) if backoff_base is not None else None,
            result=data.get("result"),
            error=data.get("error"),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            started_at=_dt_from_str(data.get("started_at")),
            completed_at=_dt_from_str(data.get("completed_at")),
            not_before=_dt_from_str(data.get("not_before")),
            bundle_id=data.get("bundle_id"),
        )
