"""
Queue API Routes

Endpoints for submitting jobs and journal bundles, polling their status,
and streaming lifecycle events.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from journalq.jobs.bundles import BundleStatusAggregator
from journalq.jobs.models import JobOptions
from journalq.jobs.queue import QueueService
from journalq.journal.bundle import submit_journal_bundle
from journalq.services.notifications import NotificationHub
from journalq.utils.logging import LogLevel, api_logger as logger, get_log_buffer


router = APIRouter(prefix="/api/queue", tags=["queue"])

# Seconds between SSE keep-alive comments
KEEPALIVE_SECONDS = 15.0
RECENT_LOG_LIMIT = 10


# =============================================================================
# Request / Response Models
# =============================================================================

class EnqueueJobRequest(BaseModel):
    """Request to queue a single job."""
    type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: Optional[int] = Field(default=None, ge=1, le=20)
    backoff_base: Optional[float] = Field(default=None, ge=0)
    bundle_id: Optional[str] = None
    delay: Optional[float] = Field(default=None, ge=0)


class EnqueueJobResponse(BaseModel):
    job_id: str


class JobStatusResponse(BaseModel):
    """Current state of a job."""
    job_id: str
    type: str
    status: str
    progress: int
    result: Any = None
    error: Optional[str] = None
    attempts: int
    max_attempts: int
    bundle_id: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class JournalBundleRequest(BaseModel):
    """Journal entry to fan out into analyze / score / update_memory_loop."""
    entry_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    entry_text: str = Field(..., min_length=1)


class BundleJobRef(BaseModel):
    job_id: str
    type: str


class JournalBundleResponse(BaseModel):
    bundle_id: str
    jobs: List[BundleJobRef]


class BundleJobResponse(BaseModel):
    job_id: str
    type: str
    status: str
    progress: int
    result: Any = None
    error: Optional[str] = None


class BundleStatusResponse(BaseModel):
    bundle_id: str
    overall_progress: int
    status: str
    jobs: List[BundleJobResponse]
    summary: Dict[str, int]


# =============================================================================
# Dependencies
# =============================================================================

def get_queue(request: Request) -> QueueService:
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Queue is not initialized")
    return queue


def get_hub(request: Request) -> NotificationHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(status_code=503, detail="Event stream is not available")
    return hub


# =============================================================================
# Job Routes
# =============================================================================

@router.post("/jobs", response_model=EnqueueJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    request: EnqueueJobRequest,
    queue: QueueService = Depends(get_queue)
):
    """Queue a job and return its id immediately."""
    try:
        options = JobOptions(
            attempts=request.attempts,
            backoff_base=request.backoff_base,
            bundle_id=request.bundle_id,
            delay=request.delay,
        )
        job_id = await queue.enqueue(request.type, request.payload, options)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return EnqueueJobResponse(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    queue: QueueService = Depends(get_queue)
):
    """
    Get the status of a queued job.

    Poll this until status is "completed" or "failed".
    """
    record = await queue.get_status(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Job not found")

    data = record.to_dict()
    return JobStatusResponse(
        job_id=record.id,
        type=record.type,
        status=record.status.value,
        progress=record.progress,
        result=record.result,
        error=record.error,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        bundle_id=record.bundle_id,
        created_at=data["created_at"],
        started_at=data["started_at"],
        completed_at=data["completed_at"],
    )


# =============================================================================
# Bundle Routes
# =============================================================================

@router.post("/journal-bundle", response_model=JournalBundleResponse, status_code=status.HTTP_202_ACCEPTED)
async def queue_journal_bundle(
    request: JournalBundleRequest,
    queue: QueueService = Depends(get_queue)
):
    """Queue the processing bundle for a journal entry."""
    try:
        submitted = await submit_journal_bundle(
            queue,
            entry_id=request.entry_id,
            user_id=request.user_id,
            entry_text=request.entry_text,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JournalBundleResponse(**submitted)


@router.get("/bundle/{bundle_id}/status", response_model=BundleStatusResponse)
async def get_bundle_status(
    bundle_id: str,
    queue: QueueService = Depends(get_queue)
):
    bundle = await BundleStatusAggregator(queue).get_bundle_status(bundle_id)
    if bundle is None:
        raise HTTPException(status_code=404, detail="Bundle not found")
    return BundleStatusResponse(**bundle.to_dict())


# =============================================================================
# Monitoring Routes
# =============================================================================

@router.get("/stats")
async def get_queue_stats(queue: QueueService = Depends(get_queue)):
    """Job counts by status, plus the active backend and log health."""
    stats = await queue.stats()
    buffer = get_log_buffer()
    stats["logs"] = {
        **buffer.get_stats(),
        "recent_errors": buffer.get_errors(limit=RECENT_LOG_LIMIT),
        "recent_warnings": buffer.get_recent(limit=RECENT_LOG_LIMIT, level=LogLevel.WARNING),
    }
    return stats


@router.get("/events")
async def stream_events(
    request: Request,
    hub: NotificationHub = Depends(get_hub)
):
    """Server-Sent Events stream of job lifecycle events."""

    async def event_source():
        async with hub.subscribe() as messages:
            logger.debug("Event stream opened", subscribers=hub.subscriber_count)
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(messages.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {message['event']}\ndata: {json.dumps(message, default=str)}\n\n"
        logger.debug("Event stream closed")

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
