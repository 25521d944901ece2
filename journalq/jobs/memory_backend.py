"""
In-process fallback backend.
Uses aiosqlite; the default ``:memory:`` database keeps every job
memory-resident and private to this process.
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from journalq.jobs.backend import STALLED_ERROR, QueueBackend
from journalq.jobs.models import JobRecord, JobStatus
from journalq.utils.logging import backend_logger as logger


_COLUMNS = """
    job_id, type, payload, status, progress, attempts, max_attempts,
    backoff_base, result, error, created_at, started_at, completed_at,
    not_before, bundle_id
"""


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _row_to_record(row) -> JobRecord:
    return JobRecord(
        id=row[0],
        type=row[1],
        payload=json.loads(row[2]),
        status=JobStatus(row[3]),
        progress=row[4],
        attempts=row[5],
        max_attempts=row[6],
        backoff_base=row[7],
        result=json.loads(row[8]) if row[8] is not None else None,
        error=row[9],
        created_at=_dt(row[10]),
        started_at=_dt(row[11]),
        completed_at=_dt(row[12]),
        not_before=_dt(row[13]),
        bundle_id=row[14],
    )


class MemoryQueueBackend(QueueBackend):
    """Single-process job store backed by SQLite."""

    name = "memory"
    durable = False

    def __init__(self, db_path: str = ":memory:", lease_seconds: float = 60.0):
        self.db_path = db_path
        self.lease_seconds = lease_seconds
        self._conn: Optional[aiosqlite.Connection] = None
        self._claim_lock = asyncio.Lock()

    async def connect(self):
        """Connect to database and create tables if needed"""
        if self._conn is not None:
            return

        if self.db_path != ":memory:":
            db_dir = Path(self.db_path).parent
            if str(db_dir) != "." and not db_dir.exists():
                db_dir.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        await self._create_tables()
        logger.info("Fallback queue backend ready", db_path=self.db_path)

    async def _create_tables(self):
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT UNIQUE NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'waiting',

                -- Input / output (JSON)
                payload TEXT NOT NULL,
                result TEXT,
                error TEXT,

                -- Execution bookkeeping
                progress INTEGER NOT NULL DEFAULT 0,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                backoff_base REAL,

                -- Timestamps (epoch seconds, UTC)
                created_at REAL NOT NULL,
                started_at REAL,
                completed_at REAL,
                not_before REAL,
                lease_until REAL,

                bundle_id TEXT
            )
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON jobs(status, created_at)
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_bundle
            ON jobs(bundle_id)
        """)

        await self._conn.commit()

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def add(self, record: JobRecord):
        await self._conn.execute("""
            INSERT INTO jobs
            (job_id, type, payload, status, progress, attempts, max_attempts,
             backoff_base, created_at, not_before, bundle_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.id,
            record.type,
            json.dumps(record.payload),
            record.status.value,
            record.progress,
            record.attempts,
            record.max_attempts,
            record.backoff_base,
            _ts(record.created_at),
            _ts(record.not_before),
            record.bundle_id,
        ))
        await self._conn.commit()

    async def get(self, job_id: str) -> Optional[JobRecord]:
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM jobs WHERE job_id = ?",
            (job_id,)
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def get_by_states(self, states: Iterable[JobStatus]) -> List[JobRecord]:
        values = [JobStatus(s).value for s in states]
        if not values:
            return []

        placeholders = ", ".join("?" for _ in values)
        cursor = await self._conn.execute(f"""
            SELECT {_COLUMNS} FROM jobs
            WHERE status IN ({placeholders})
            ORDER BY created_at ASC, seq ASC
        """, values)
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def get_by_bundle(self, bundle_id: str) -> List[JobRecord]:
        cursor = await self._conn.execute(f"""
            SELECT {_COLUMNS} FROM jobs
            WHERE bundle_id = ?
            ORDER BY created_at ASC, seq ASC
        """, (bundle_id,))
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def claim(self, limit: int, now: datetime) -> List[JobRecord]:
        if limit <= 0:
            return []

        now_ts = now.timestamp()
        lease_until = now_ts + self.lease_seconds
        async with self._claim_lock:
            cursor = await self._conn.execute("""
                SELECT job_id FROM jobs
                WHERE status = 'waiting'
                  AND attempts < max_attempts
                  AND (not_before IS NULL OR not_before <= ?)
                ORDER BY created_at ASC, seq ASC
                LIMIT ?
            """, (now_ts, limit))
            candidates = [row[0] for row in await cursor.fetchall()]

            claimed = []
            for job_id in candidates:
                # Conditional update: only flips rows still waiting
                cursor = await self._conn.execute("""
                    UPDATE jobs
                    SET status = 'active',
                        attempts = attempts + 1,
                        progress = 0,
                        started_at = ?,
                        not_before = NULL,
                        lease_until = ?
                    WHERE job_id = ? AND status = 'waiting'
                """, (now_ts, lease_until, job_id))
                if cursor.rowcount == 1:
                    claimed.append(job_id)
            await self._conn.commit()

        records = []
        for job_id in claimed:
            record = await self.get(job_id)
            if record:
                records.append(record)
        return records

    async def update_progress(self, job_id: str, progress: int) -> bool:
        cursor = await self._conn.execute("""
            UPDATE jobs SET progress = ?
            WHERE job_id = ? AND status = 'active' AND progress < ?
        """, (progress, job_id, progress))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def renew_leases(self, job_ids: List[str], now: datetime) -> int:
        if not job_ids:
            return 0

        placeholders = ", ".join("?" for _ in job_ids)
        cursor = await self._conn.execute(f"""
            UPDATE jobs SET lease_until = ?
            WHERE status = 'active' AND job_id IN ({placeholders})
        """, [now.timestamp() + self.lease_seconds, *job_ids])
        await self._conn.commit()
        return cursor.rowcount

    async def recover_stalled(self, now: datetime) -> List[JobRecord]:
        now_ts = now.timestamp()
        async with self._claim_lock:
            cursor = await self._conn.execute("""
                SELECT job_id, attempts, max_attempts FROM jobs
                WHERE status = 'active' AND lease_until < ?
                ORDER BY created_at ASC, seq ASC
            """, (now_ts,))
            stalled = await cursor.fetchall()

            released = []
            for job_id, attempts, max_attempts in stalled:
                if attempts >= max_attempts:
                    cursor = await self._conn.execute("""
                        UPDATE jobs
                        SET status = 'failed',
                            error = ?,
                            completed_at = ?
                        WHERE job_id = ? AND status = 'active' AND lease_until < ?
                    """, (STALLED_ERROR, now_ts, job_id, now_ts))
                else:
                    cursor = await self._conn.execute("""
                        UPDATE jobs
                        SET status = 'waiting',
                            error = ?,
                            progress = 0,
                            not_before = NULL
                        WHERE job_id = ? AND status = 'active' AND lease_until < ?
                    """, (STALLED_ERROR, job_id, now_ts))
                if cursor.rowcount == 1:
                    released.append(job_id)
            await self._conn.commit()

        records = []
        for job_id in released:
            record = await self.get(job_id)
            if record:
                records.append(record)
        return records

    async def mark_completed(
        self,
        job_id: str,
        result: Any,
        completed_at: datetime
    ) -> Optional[JobRecord]:
        cursor = await self._conn.execute("""
            UPDATE jobs
            SET status = 'completed',
                result = ?,
                error = NULL,
                progress = 100,
                completed_at = ?
            WHERE job_id = ? AND status = 'active'
        """, (json.dumps(result), completed_at.timestamp(), job_id))
        await self._conn.commit()
        if cursor.rowcount != 1:
            return None
        return await self.get(job_id)

    async def mark_retry(
        self,
        job_id: str,
        error: str,
        not_before: datetime
    ) -> Optional[JobRecord]:
        cursor = await self._conn.execute("""
            UPDATE jobs
            SET status = 'waiting',
                error = ?,
                progress = 0,
                not_before = ?
            WHERE job_id = ? AND status = 'active'
        """, (error, not_before.timestamp(), job_id))
        await self._conn.commit()
        if cursor.rowcount != 1:
            return None
        return await self.get(job_id)

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        completed_at: datetime
    ) -> Optional[JobRecord]:
        cursor = await self._conn.execute("""
            UPDATE jobs
            SET status = 'failed',
                error = ?,
                completed_at = ?
            WHERE job_id = ? AND status = 'active'
        """, (error, completed_at.timestamp(), job_id))
        await self._conn.commit()
        if cursor.rowcount != 1:
            return None
        return await self.get(job_id)

    async def reap(self, older_than: datetime) -> int:
        """Remove completed/failed jobs that finished before the cutoff"""
        cursor = await self._conn.execute("""
            DELETE FROM jobs
            WHERE status IN ('completed', 'failed')
            AND completed_at < ?
        """, (older_than.timestamp(),))
        await self._conn.commit()
        return cursor.rowcount

    async def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        cursor = await self._conn.execute(
            "SELECT status, COUNT(*) FROM jobs GROUP BY status"
        )
        for status, count in await cursor.fetchall():
            counts[status] = count
        return counts
