from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import aiosqlite
import structlog

from ..models import (
    BanAllRecord,
    DependencyCounts,
    JobRecord,
    JobState,
    QueueName,
)
from .base import JobStore

logger = structlog.get_logger(__name__)


CREATE_JOBS = """
CREATE TABLE IF NOT EXISTS queue_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL UNIQUE,
    queue TEXT NOT NULL,
    name TEXT NOT NULL,
    state TEXT NOT NULL,
    parent_id TEXT,
    action_id TEXT NOT NULL,
    target_id INTEGER,
    data_json TEXT NOT NULL,
    attempts_made INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 1,
    progress_json TEXT,
    error TEXT,
    created_at REAL NOT NULL,
    finished_at REAL
)
"""

CREATE_JOBS_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_queue_jobs_queue_state ON queue_jobs (queue, state)",
    "CREATE INDEX IF NOT EXISTS idx_queue_jobs_parent ON queue_jobs (parent_id)",
)


CREATE_RECORDS = """
CREATE TABLE IF NOT EXISTS ban_all_records (
    action_id TEXT PRIMARY KEY,
    target_id INTEGER NOT NULL,
    outcome TEXT NOT NULL,
    created_at REAL NOT NULL,
    payload_json TEXT NOT NULL
)
"""

PROCESSED_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)
UNPROCESSED_STATES = (JobState.WAITING, JobState.ACTIVE)


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


def _now() -> float:
    return datetime.now(timezone.utc).timestamp()


class SQLiteJobStore(JobStore):
    """Durable queue backend: one table of jobs, one table of BanAll records."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._conn: Optional[aiosqlite.Connection] = None
        # serializes multi-statement writes on the shared connection
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute(CREATE_JOBS)
        for statement in CREATE_JOBS_INDEXES:
            await self._conn.execute(statement)
        await self._conn.execute(CREATE_RECORDS)
        await self._conn.commit()
        logger.info("sqlite_connected", path=str(self._path))

    async def disconnect(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # records

    async def save_record(self, record: BanAllRecord) -> None:
        assert self._conn
        async with self._write_lock:
            await self._conn.execute(
                """
                INSERT INTO ban_all_records (action_id, target_id, outcome, created_at, payload_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(action_id) DO UPDATE SET
                    outcome=excluded.outcome,
                    payload_json=excluded.payload_json
                """,
                (
                    record.action_id,
                    record.target.id,
                    record.outcome.value,
                    _ts(record.created_at),
                    json.dumps(record.to_dict()),
                ),
            )
            await self._conn.commit()
        logger.debug("sqlite_save_record", action_id=record.action_id, outcome=record.outcome.value)

    async def get_record(self, action_id: str) -> Optional[BanAllRecord]:
        assert self._conn
        cursor = await self._conn.execute(
            "SELECT payload_json FROM ban_all_records WHERE action_id = ?", (action_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return BanAllRecord.from_dict(json.loads(row["payload_json"]))

    async def list_records(self, *, outcome: Optional[str] = None) -> list[BanAllRecord]:
        assert self._conn
        if outcome is None:
            cursor = await self._conn.execute("SELECT payload_json FROM ban_all_records ORDER BY created_at")
        else:
            cursor = await self._conn.execute(
                "SELECT payload_json FROM ban_all_records WHERE outcome = ? ORDER BY created_at",
                (outcome,),
            )
        rows = await cursor.fetchall()
        await cursor.close()
        return [BanAllRecord.from_dict(json.loads(row["payload_json"])) for row in rows]

    # jobs

    async def add_flow(self, parent: JobRecord, children: Iterable[JobRecord]) -> None:
        assert self._conn
        rows = [self._job_row(parent)] + [self._job_row(child) for child in children]
        async with self._write_lock:
            try:
                await self._conn.executemany(
                    """
                    INSERT INTO queue_jobs (
                        job_id, queue, name, state, parent_id, action_id, target_id,
                        data_json, attempts_made, max_attempts, progress_json, error,
                        created_at, finished_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await self._conn.commit()
            except Exception:
                await self._conn.rollback()
                raise
        logger.info(
            "sqlite_add_flow",
            parent_id=parent.job_id,
            action_id=parent.action_id,
            children=len(rows) - 1,
        )

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        assert self._conn
        cursor = await self._conn.execute("SELECT * FROM queue_jobs WHERE job_id = ?", (job_id,))
        row = await cursor.fetchone()
        await cursor.close()
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        queue: QueueName,
        *,
        states: Optional[Iterable[JobState]] = None,
    ) -> list[JobRecord]:
        assert self._conn
        query = "SELECT * FROM queue_jobs WHERE queue = ?"
        params: list = [queue.value]
        if states is not None:
            wanted = [state.value for state in states]
            query += f" AND state IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        cursor = await self._conn.execute(query + " ORDER BY id", params)
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_job(row) for row in rows]

    async def claim_next(self, queue: QueueName) -> Optional[JobRecord]:
        assert self._conn
        async with self._write_lock:
            cursor = await self._conn.execute(
                "SELECT job_id FROM queue_jobs WHERE queue = ? AND state = ? ORDER BY id LIMIT 1",
                (queue.value, JobState.WAITING.value),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if row is None:
                return None
            await self._conn.execute(
                "UPDATE queue_jobs SET state = ? WHERE job_id = ?",
                (JobState.ACTIVE.value, row["job_id"]),
            )
            await self._conn.commit()
        return await self.get_job(row["job_id"])

    async def record_attempt(self, job_id: str, attempts_made: int) -> None:
        assert self._conn
        async with self._write_lock:
            await self._conn.execute(
                "UPDATE queue_jobs SET attempts_made = ? WHERE job_id = ?",
                (attempts_made, job_id),
            )
            await self._conn.commit()

    async def finish_job(self, job_id: str, state: JobState, *, error: Optional[str] = None) -> None:
        assert self._conn
        async with self._write_lock:
            await self._conn.execute(
                "UPDATE queue_jobs SET state = ?, error = ?, finished_at = ? WHERE job_id = ?",
                (state.value, error, _now(), job_id),
            )
            await self._conn.commit()

    async def dependency_counts(self, parent_id: str) -> DependencyCounts:
        assert self._conn
        cursor = await self._conn.execute(
            "SELECT state, COUNT(*) AS total FROM queue_jobs WHERE parent_id = ? GROUP BY state",
            (parent_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        by_state = {JobState(row["state"]): row["total"] for row in rows}
        return DependencyCounts(
            processed=sum(by_state.get(state, 0) for state in PROCESSED_STATES),
            failed=by_state.get(JobState.FAILED, 0),
            ignored=by_state.get(JobState.CANCELLED, 0),
            unprocessed=sum(by_state.get(state, 0) for state in UNPROCESSED_STATES),
        )

    async def update_progress(self, job_id: str, progress: dict) -> None:
        assert self._conn
        async with self._write_lock:
            await self._conn.execute(
                "UPDATE queue_jobs SET progress_json = ? WHERE job_id = ?",
                (json.dumps(progress), job_id),
            )
            await self._conn.commit()

    async def complete_parent(self, parent_id: str) -> bool:
        assert self._conn
        async with self._write_lock:
            cursor = await self._conn.execute(
                "UPDATE queue_jobs SET state = ?, finished_at = ? WHERE job_id = ? AND state = ?",
                (JobState.COMPLETED.value, _now(), parent_id, JobState.WAITING_CHILDREN.value),
            )
            changed = cursor.rowcount == 1
            await cursor.close()
            await self._conn.commit()
        return changed

    async def latest_parent_for_target(self, target_id: int) -> Optional[JobRecord]:
        assert self._conn
        cursor = await self._conn.execute(
            "SELECT * FROM queue_jobs WHERE queue = ? AND target_id = ? ORDER BY id DESC LIMIT 1",
            (QueueName.ORCHESTRATOR.value, target_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return self._row_to_job(row) if row else None

    async def parent_for_action(self, action_id: str) -> Optional[JobRecord]:
        assert self._conn
        cursor = await self._conn.execute(
            "SELECT * FROM queue_jobs WHERE queue = ? AND action_id = ? ORDER BY id DESC LIMIT 1",
            (QueueName.ORCHESTRATOR.value, action_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return self._row_to_job(row) if row else None

    async def cancel_pending_children(self, parent_id: str) -> int:
        assert self._conn
        async with self._write_lock:
            cursor = await self._conn.execute(
                "UPDATE queue_jobs SET state = ?, finished_at = ? WHERE parent_id = ? AND state = ?",
                (JobState.CANCELLED.value, _now(), parent_id, JobState.WAITING.value),
            )
            cancelled = cursor.rowcount
            await cursor.close()
            await self._conn.commit()
        logger.info("sqlite_cancel_children", parent_id=parent_id, cancelled=cancelled)
        return cancelled

    async def requeue_stalled(self, queue: QueueName) -> int:
        assert self._conn
        async with self._write_lock:
            cursor = await self._conn.execute(
                "UPDATE queue_jobs SET state = ? WHERE queue = ? AND state = ?",
                (JobState.WAITING.value, queue.value, JobState.ACTIVE.value),
            )
            requeued = cursor.rowcount
            await cursor.close()
            await self._conn.commit()
        if requeued:
            logger.warning("sqlite_requeue_stalled", queue=queue.value, count=requeued)
        return requeued

    async def prune_finished(
        self,
        queue: QueueName,
        state: JobState,
        *,
        older_than: datetime,
        keep_count: int,
    ) -> int:
        assert self._conn
        async with self._write_lock:
            # children of a running parent are still needed for its counts
            cursor = await self._conn.execute(
                """
                DELETE FROM queue_jobs
                WHERE queue = :queue AND state = :state
                  AND (
                    parent_id IS NULL
                    OR parent_id IN (SELECT job_id FROM queue_jobs WHERE state = :completed)
                  )
                  AND (
                    finished_at < :cutoff
                    OR id NOT IN (
                        SELECT id FROM queue_jobs
                        WHERE queue = :queue AND state = :state
                        ORDER BY finished_at DESC, id DESC
                        LIMIT :keep
                    )
                  )
                """,
                {
                    "queue": queue.value,
                    "state": state.value,
                    "completed": JobState.COMPLETED.value,
                    "cutoff": older_than.timestamp(),
                    "keep": keep_count,
                },
            )
            removed = cursor.rowcount
            await cursor.close()
            await self._conn.commit()
        if removed:
            logger.info("sqlite_prune_jobs", queue=queue.value, state=state.value, removed=removed)
        return removed

    def _job_row(self, job: JobRecord) -> tuple:
        return (
            job.job_id,
            job.queue.value,
            job.name,
            job.state.value,
            job.parent_id,
            job.action_id,
            job.data.get("target_id"),
            json.dumps(job.data),
            job.attempts_made,
            job.max_attempts,
            json.dumps(job.progress) if job.progress is not None else None,
            job.error,
            _ts(job.created_at) or _now(),
            _ts(job.finished_at),
        )

    def _row_to_job(self, row: aiosqlite.Row) -> JobRecord:
        return JobRecord(
            job_id=row["job_id"],
            queue=QueueName(row["queue"]),
            name=row["name"],
            state=JobState(row["state"]),
            data=json.loads(row["data_json"]),
            action_id=row["action_id"],
            parent_id=row["parent_id"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            progress=json.loads(row["progress_json"]) if row["progress_json"] else None,
            error=row["error"],
            created_at=_dt(row["created_at"]),
            finished_at=_dt(row["finished_at"]),
        )
