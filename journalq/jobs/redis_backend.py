"""
Durable job backend on Redis.

Layout (all keys under the configured prefix):

    {prefix}:job:{id}        hash with the record's fields
    {prefix}:waiting         zset, score = created_at, claimable now
    {prefix}:delayed         zset, score = not_before, claimable later
    {prefix}:active          zset, score = lease deadline of the owning worker
    {prefix}:finished        zset, score = completed_at, reaper index
    {prefix}:bundle:{bid}    set of ids in a bundle

Claims run inside WATCH/MULTI so several worker processes can share one
Redis without double-claiming a job. Running workers keep pushing their
leases forward; an active job whose lease lapses is released by
``recover_stalled``.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import WatchError

from journalq.jobs.backend import STALLED_ERROR, QueueBackend
from journalq.jobs.models import JobRecord, JobStatus, utcnow
from journalq.utils.logging import backend_logger as logger


def _ts(value: Optional[datetime]) -> str:
    return repr(value.timestamp()) if value else ""


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _to_hash(record: JobRecord) -> Dict[str, str]:
    return {
        "id": record.id,
        "type": record.type,
        "payload": json.dumps(record.payload),
        "status": record.status.value,
        "progress": str(record.progress),
        "attempts": str(record.attempts),
        "max_attempts": str(record.max_attempts),
        "backoff_base": "" if record.backoff_base is None else repr(record.backoff_base),
        "result": "" if record.result is None else json.dumps(record.result),
        "error": record.error or "",
        "created_at": _ts(record.created_at),
        "started_at": _ts(record.started_at),
        "completed_at": _ts(record.completed_at),
        "not_before": _ts(record.not_before),
        "bundle_id": record.bundle_id or "",
    }


def _from_hash(data: Dict[str, str]) -> JobRecord:
    return JobRecord(
        id=data["id"],
        type=data["type"],
        payload=json.loads(data["payload"]),
        status=JobStatus(data["status"]),
        progress=int(data.get("progress") or 0),
        attempts=int(data.get("attempts") or 0),
        max_attempts=int(data.get("max_attempts") or 3),
        backoff_base=float(data["backoff_base"]) if data.get("backoff_base") else None,
        result=json.loads(data["result"]) if data.get("result") else None,
        error=data.get("error") or None,
        created_at=_dt(data.get("created_at")) or utcnow(),
        started_at=_dt(data.get("started_at")),
        completed_at=_dt(data.get("completed_at")),
        not_before=_dt(data.get("not_before")),
        bundle_id=data.get("bundle_id") or None,
    )


class RedisQueueBackend(QueueBackend):
    """Job store shared by every process pointed at the same Redis."""

    name = "redis"
    durable = True

    def __init__(self, redis: Redis, prefix: str = "journalq", lease_seconds: float = 60.0):
        # Client must be created with decode_responses=True
        self._redis = redis
        self.prefix = prefix
        self.lease_seconds = lease_seconds
        self._waiting_key = f"{prefix}:waiting"
        self._delayed_key = f"{prefix}:delayed"
        self._active_key = f"{prefix}:active"
        self._finished_key = f"{prefix}:finished"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _bundle_key(self, bundle_id: str) -> str:
        return f"{self.prefix}:bundle:{bundle_id}"

    async def connect(self):
        await self._redis.ping()
        logger.info("Durable queue backend ready", prefix=self.prefix)

    async def close(self):
        await self._redis.aclose()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, job_id: str) -> Optional[JobRecord]:
        data = await self._redis.hgetall(self._job_key(job_id))
        return _from_hash(data) if data else None

    async def _load_many(self, job_ids: Iterable[str]) -> List[JobRecord]:
        job_ids = list(job_ids)
        if not job_ids:
            return []

        async with self._redis.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._job_key(job_id))
            rows = await pipe.execute()

        records = [_from_hash(row) for row in rows if row]
        records.sort(key=lambda r: r.created_at)
        return records

    async def get_by_states(self, states: Iterable[JobStatus]) -> List[JobRecord]:
        wanted = {JobStatus(s) for s in states}
        ids: set = set()

        if JobStatus.WAITING in wanted:
            ids.update(await self._redis.zrange(self._waiting_key, 0, -1))
            ids.update(await self._redis.zrange(self._delayed_key, 0, -1))
        if JobStatus.ACTIVE in wanted:
            ids.update(await self._redis.zrange(self._active_key, 0, -1))
        if wanted & {JobStatus.COMPLETED, JobStatus.FAILED}:
            ids.update(await self._redis.zrange(self._finished_key, 0, -1))

        records = await self._load_many(ids)
        return [r for r in records if r.status in wanted]

    async def get_by_bundle(self, bundle_id: str) -> List[JobRecord]:
        ids = await self._redis.smembers(self._bundle_key(bundle_id))
        return await self._load_many(ids)

    async def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        counts[JobStatus.WAITING.value] = (
            await self._redis.zcard(self._waiting_key)
            + await self._redis.zcard(self._delayed_key)
        )
        counts[JobStatus.ACTIVE.value] = await self._redis.zcard(self._active_key)

        finished = await self._redis.zrange(self._finished_key, 0, -1)
        if finished:
            async with self._redis.pipeline(transaction=False) as pipe:
                for job_id in finished:
                    pipe.hget(self._job_key(job_id), "status")
                statuses = await pipe.execute()
            for status in statuses:
                if status in counts:
                    counts[status] += 1
        return counts

    # =========================================================================
    # Writes
    # =========================================================================

    async def add(self, record: JobRecord):
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(record.id), mapping=_to_hash(record))
            if record.not_before and record.not_before > utcnow():
                pipe.zadd(self._delayed_key, {record.id: record.not_before.timestamp()})
            else:
                pipe.zadd(self._waiting_key, {record.id: record.created_at.timestamp()})
            if record.bundle_id:
                pipe.sadd(self._bundle_key(record.bundle_id), record.id)
            await pipe.execute()

    async def _promote_due(self, now: datetime):
        """Move delayed jobs whose not_before has passed into the waiting set."""
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self._delayed_key)
                    due = await pipe.zrangebyscore(self._delayed_key, "-inf", now.timestamp())
                    if not due:
                        await pipe.unwatch()
                        return

                    scores = {}
                    for job_id in due:
                        created = await pipe.hget(self._job_key(job_id), "created_at")
                        scores[job_id] = float(created) if created else now.timestamp()

                    pipe.multi()
                    pipe.zrem(self._delayed_key, *due)
                    pipe.zadd(self._waiting_key, scores)
                    await pipe.execute()
                    return
                except WatchError:
                    continue

    async def claim(self, limit: int, now: datetime) -> List[JobRecord]:
        if limit <= 0:
            return []

        await self._promote_due(now)

        started = _ts(now)
        lease_until = now.timestamp() + self.lease_seconds
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self._waiting_key)
                    ids = await pipe.zrange(self._waiting_key, 0, limit - 1)
                    if not ids:
                        await pipe.unwatch()
                        return []

                    pipe.multi()
                    pipe.zrem(self._waiting_key, *ids)
                    pipe.zadd(self._active_key, {job_id: lease_until for job_id in ids})
                    for job_id in ids:
                        key = self._job_key(job_id)
                        pipe.hset(key, mapping={
                            "status": JobStatus.ACTIVE.value,
                            "progress": "0",
                            "started_at": started,
                            "not_before": "",
                        })
                        pipe.hincrby(key, "attempts", 1)
                    await pipe.execute()
                    break
                except WatchError:
                    # Another process touched the waiting set; re-read it
                    continue

        return await self._load_many(ids)

    async def _is_active(self, job_id: str) -> bool:
        return await self._redis.zscore(self._active_key, job_id) is not None

    async def update_progress(self, job_id: str, progress: int) -> bool:
        # Only the owning worker writes progress, so read-then-write is safe
        key = self._job_key(job_id)
        current = await self._redis.hget(key, "progress")
        if current is None or not await self._is_active(job_id):
            return False
        if progress <= int(current):
            return False
        await self._redis.hset(key, "progress", str(progress))
        return True

    async def renew_leases(self, job_ids: List[str], now: datetime) -> int:
        if not job_ids:
            return 0
        deadline = now.timestamp() + self.lease_seconds
        # xx: only jobs still active; ch: count the members whose score moved
        return await self._redis.zadd(
            self._active_key, {job_id: deadline for job_id in job_ids}, xx=True, ch=True
        )

    async def recover_stalled(self, now: datetime) -> List[JobRecord]:
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self._active_key)
                    expired = await pipe.zrangebyscore(
                        self._active_key, "-inf", f"({now.timestamp()}"
                    )
                    if not expired:
                        await pipe.unwatch()
                        return []

                    rows = {}
                    for job_id in expired:
                        rows[job_id] = await pipe.hmget(
                            self._job_key(job_id), ["attempts", "max_attempts", "created_at"]
                        )

                    pipe.multi()
                    pipe.zrem(self._active_key, *expired)
                    for job_id, (attempts, max_attempts, created) in rows.items():
                        if attempts is None:
                            # Hash already gone; dropping the index entry is enough
                            continue
                        key = self._job_key(job_id)
                        if int(attempts) >= int(max_attempts or 0):
                            pipe.hset(key, mapping={
                                "status": JobStatus.FAILED.value,
                                "error": STALLED_ERROR,
                                "completed_at": _ts(now),
                            })
                            pipe.zadd(self._finished_key, {job_id: now.timestamp()})
                        else:
                            pipe.hset(key, mapping={
                                "status": JobStatus.WAITING.value,
                                "error": STALLED_ERROR,
                                "progress": "0",
                                "not_before": "",
                            })
                            score = float(created) if created else now.timestamp()
                            pipe.zadd(self._waiting_key, {job_id: score})
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        return await self._load_many(expired)

    async def mark_completed(
        self,
        job_id: str,
        result: Any,
        completed_at: datetime
    ) -> Optional[JobRecord]:
        encoded = json.dumps(result)
        if not await self._is_active(job_id):
            return None

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping={
                "status": JobStatus.COMPLETED.value,
                "result": encoded,
                "error": "",
                "progress": "100",
                "completed_at": _ts(completed_at),
            })
            pipe.zrem(self._active_key, job_id)
            pipe.zadd(self._finished_key, {job_id: completed_at.timestamp()})
            await pipe.execute()
        return await self.get(job_id)

    async def mark_retry(
        self,
        job_id: str,
        error: str,
        not_before: datetime
    ) -> Optional[JobRecord]:
        if not await self._is_active(job_id):
            return None

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping={
                "status": JobStatus.WAITING.value,
                "error": error,
                "progress": "0",
                "not_before": _ts(not_before),
            })
            pipe.zrem(self._active_key, job_id)
            pipe.zadd(self._delayed_key, {job_id: not_before.timestamp()})
            await pipe.execute()
        return await self.get(job_id)

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        completed_at: datetime
    ) -> Optional[JobRecord]:
        if not await self._is_active(job_id):
            return None

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping={
                "status": JobStatus.FAILED.value,
                "error": error,
                "completed_at": _ts(completed_at),
            })
            pipe.zrem(self._active_key, job_id)
            pipe.zadd(self._finished_key, {job_id: completed_at.timestamp()})
            await pipe.execute()
        return await self.get(job_id)

    async def reap(self, older_than: datetime) -> int:
        expired = await self._redis.zrangebyscore(
            self._finished_key, "-inf", f"({older_than.timestamp()}"
        )
        if not expired:
            return 0

        async with self._redis.pipeline(transaction=False) as pipe:
            for job_id in expired:
                pipe.hget(self._job_key(job_id), "bundle_id")
            bundle_ids = await pipe.execute()

        async with self._redis.pipeline(transaction=True) as pipe:
            for job_id, bundle_id in zip(expired, bundle_ids):
                pipe.delete(self._job_key(job_id))
                if bundle_id:
                    pipe.srem(self._bundle_key(bundle_id), job_id)
            pipe.zrem(self._finished_key, *expired)
            await pipe.execute()

        return len(expired)
