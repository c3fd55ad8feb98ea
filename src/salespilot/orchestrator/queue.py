"""Persistent job queue for the outreach pipeline.

Jobs live in SQLite (WAL mode). Every status change is an optimistic
conditional update (``WHERE status = ?``) made while holding that job's record
lock; the connection lock only serialises individual statements, so unrelated
jobs never wait on each other.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from salespilot.errors import (
    ClientError,
    FailureReason,
    InvalidStateTransitionError,
    JobNotFoundError,
    QueueFullError,
    StateTransitionRaceError,
)

from .locks import KeyedLocks
from .models import TERMINAL_STATUSES, Job, JobPriority, JobStatus, JobType
from .state_machine import StateMachineValidator

logger = logging.getLogger(__name__)

WallClock = Callable[[], datetime]


SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL UNIQUE,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    error TEXT,
    reason TEXT,
    progress REAL NOT NULL DEFAULT 0,
    result TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    requeued_from TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority DESC, seq);
"""

COLUMNS = (
    "job_id, job_type, payload, priority, status, created_at, started_at, "
    "completed_at, error, reason, progress, result, cancel_requested, requeued_from"
)

_ACTIVE = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """SQLite-backed persistent queue with bounded capacity.

    Dequeue order: ``high`` priority before ``normal``; FIFO within a tier.
    """

    CLAIM_BATCH = 8

    def __init__(
        self,
        path: Path,
        *,
        capacity: int = 1000,
        validator: Optional[StateMachineValidator] = None,
        clock: WallClock = _utcnow,
    ) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()
        self._record_locks = KeyedLocks()
        self._validator = validator or StateMachineValidator()
        self._clock = clock
        self.capacity = capacity

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Optional[Dict[str, Any]] = None,
        priority: Union[JobPriority, str] = JobPriority.NORMAL,
    ) -> str:
        """Add a job and return its id.

        Raises:
            QueueFullError: If pending plus running jobs reached ``capacity``
            ClientError: If the job type is unknown or the payload is not JSON
        """
        try:
            job_type = JobType(job_type)
            priority = JobPriority(priority)
        except ValueError as exc:
            raise ClientError(str(exc)) from exc
        return self._insert(job_type, payload or {}, priority)

    def requeue(self, job_id: str) -> str:
        """Re-submit a finished job's work under a new job id.

        Raises:
            InvalidStateTransitionError: If the job has not finished yet
        """
        job = self.get_status(job_id)
        if not job.is_terminal:
            raise InvalidStateTransitionError(
                f"Job {job_id} is still {job.status.value}; only finished jobs can be requeued",
                details={"job_id": job_id},
            )
        new_id = self._insert(job.job_type, job.payload, job.priority, requeued_from=job_id)
        logger.info(
            "Requeued job",
            extra={"job_id": new_id, "requeued_from": job_id, "job_type": job.job_type.value},
        )
        return new_id

    def _insert(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        priority: JobPriority,
        *,
        requeued_from: Optional[str] = None,
    ) -> str:
        try:
            payload_json = json.dumps(payload)
        except (TypeError, ValueError) as exc:
            raise ClientError(f"Job payload is not JSON serialisable: {exc}") from exc

        job_id = str(uuid.uuid4())
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    f"""
                    INSERT INTO jobs(job_id, job_type, payload, priority, status, created_at, requeued_from)
                    SELECT ?, ?, ?, ?, 'pending', ?, ?
                    WHERE (SELECT COUNT(*) FROM jobs WHERE status IN {_ACTIVE}) < ?
                    """,
                    (
                        job_id,
                        job_type.value,
                        payload_json,
                        priority.rank,
                        self._clock().isoformat(),
                        requeued_from,
                        self.capacity,
                    ),
                )
        if cur.rowcount == 0:
            raise QueueFullError(
                f"Job queue is at capacity ({self.capacity} active jobs)",
                details={"capacity": self.capacity},
            )
        logger.debug(
            "Enqueued job",
            extra={"job_id": job_id, "job_type": job_type.value, "priority": priority.value},
        )
        return job_id

    # ------------------------------------------------------------------
    # Worker-side transitions
    # ------------------------------------------------------------------

    def claim_next(self) -> Optional[Job]:
        """Atomically move the next pending job to running and return it."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT job_id FROM jobs WHERE status = 'pending' "
                "ORDER BY priority DESC, seq ASC LIMIT ?",
                (self.CLAIM_BATCH,),
            ).fetchall()
        for (job_id,) in rows:
            with self._record_locks.hold(job_id):
                job = self._fetch(job_id)
                if job.status != JobStatus.PENDING:
                    continue
                return self._apply(job, JobStatus.RUNNING, started_at=self._clock().isoformat())
        return None

    def update_progress(self, job_id: str, progress: float) -> Job:
        progress = min(1.0, max(0.0, float(progress)))
        with self._record_locks.hold(job_id):
            job = self._fetch(job_id)
            return self._apply(job, JobStatus.RUNNING, progress=progress)

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> Job:
        with self._record_locks.hold(job_id):
            job = self._fetch(job_id)
            return self._apply(
                job,
                JobStatus.COMPLETED,
                completed_at=self._clock().isoformat(),
                progress=1.0,
                result=json.dumps(result) if result is not None else None,
            )

    def fail(self, job_id: str, error: str, reason: FailureReason) -> Job:
        with self._record_locks.hold(job_id):
            job = self._fetch(job_id)
            return self._apply(
                job,
                JobStatus.FAILED,
                completed_at=self._clock().isoformat(),
                error=error,
                reason=reason.value,
            )

    def mark_cancelled(self, job_id: str, error: str = "Cancelled at checkpoint") -> Job:
        """Record that a running job observed its cancellation flag."""
        with self._record_locks.hold(job_id):
            job = self._fetch(job_id)
            return self._apply(
                job,
                JobStatus.CANCELLED,
                completed_at=self._clock().isoformat(),
                error=error,
            )

    def is_cancel_requested(self, job_id: str) -> bool:
        return self._fetch(job_id).cancel_requested

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def cancel(self, job_id: str, *, operator: Optional[str] = None) -> Job:
        """Cancel a job.

        Pending jobs become ``cancelled`` immediately. Running jobs get their
        cancellation flag set and stop at their next checkpoint. Finished jobs
        are returned unchanged.
        """
        with self._record_locks.hold(job_id):
            job = self._fetch(job_id)
            if job.status == JobStatus.PENDING:
                return self._apply(
                    job,
                    JobStatus.CANCELLED,
                    completed_at=self._clock().isoformat(),
                    error="Cancelled before start",
                    operator=operator,
                )
            if job.status == JobStatus.RUNNING and not job.cancel_requested:
                with self._lock:
                    with self._conn:
                        self._conn.execute(
                            "UPDATE jobs SET cancel_requested = 1 "
                            "WHERE job_id = ? AND status = 'running'",
                            (job_id,),
                        )
                logger.info(
                    "Cancellation requested for running job",
                    extra={"job_id": job_id, "operator": operator},
                )
                return self._fetch(job_id)
            return job

    def cleanup(self, days_to_keep: int = 90) -> int:
        """Delete finished jobs older than ``days_to_keep``.

        Returns:
            Number of jobs removed
        """
        cutoff = (self._clock() - timedelta(days=days_to_keep)).isoformat()
        terminal = tuple(status.value for status in TERMINAL_STATUSES)
        placeholders = ", ".join("?" for _ in terminal)
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    f"DELETE FROM jobs WHERE status IN ({placeholders}) AND completed_at < ?",
                    (*terminal, cutoff),
                )
        if cur.rowcount:
            logger.info(
                "Cleaned up finished jobs",
                extra={"removed": cur.rowcount, "days_to_keep": days_to_keep},
            )
        return cur.rowcount

    def recover_interrupted(self) -> List[str]:
        """Fail jobs left running by a previous process.

        Returns:
            Ids of the jobs that were failed
        """
        recovered = []
        for job in self.list_jobs(status=JobStatus.RUNNING, limit=None):
            with self._record_locks.hold(job.job_id):
                current = self._fetch(job.job_id)
                if current.status != JobStatus.RUNNING:
                    continue
                self._apply(
                    current,
                    JobStatus.FAILED,
                    completed_at=self._clock().isoformat(),
                    error="Interrupted by process restart",
                    reason=FailureReason.TRANSIENT.value,
                )
            recovered.append(job.job_id)
        if recovered:
            logger.warning(
                "Failed jobs interrupted by restart",
                extra={"job_ids": recovered, "count": len(recovered)},
            )
        return recovered

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self, job_id: str) -> Job:
        """Current snapshot of a job.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        return self._fetch(job_id)

    async def wait_for(
        self,
        job_id: str,
        *,
        poll_interval: float = 0.1,
        timeout: Optional[float] = None,
    ) -> Job:
        """Wait until the job reaches a terminal status."""

        async def _poll() -> Job:
            while True:
                job = self._fetch(job_id)
                if job.is_terminal:
                    return job
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(_poll(), timeout)

    def list_jobs(
        self,
        *,
        status: Optional[Union[JobStatus, str]] = None,
        job_type: Optional[Union[JobType, str]] = None,
        limit: Optional[int] = 50,
    ) -> List[Job]:
        """List jobs, newest first."""
        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if job_type is not None:
            clauses.append("job_type = ?")
            params.append(JobType(job_type).value)
        query = f"SELECT {COLUMNS} FROM jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def pending_count(self) -> int:
        return self._count("status = 'pending'")

    def active_count(self) -> int:
        return self._count(f"status IN {_ACTIVE}")

    def stats(self) -> Dict[str, Any]:
        """Aggregate counts for operators."""
        with self._lock:
            by_status = dict(
                self._conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
            )
            by_type = dict(
                self._conn.execute("SELECT job_type, COUNT(*) FROM jobs GROUP BY job_type").fetchall()
            )
            by_priority = dict(
                self._conn.execute(
                    "SELECT priority, COUNT(*) FROM jobs WHERE status = 'pending' GROUP BY priority"
                ).fetchall()
            )
            timings = self._conn.execute(
                "SELECT started_at, completed_at FROM jobs "
                "WHERE status = 'completed' AND started_at IS NOT NULL"
            ).fetchall()

        durations = [
            (datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds()
            for start, end in timings
        ]
        active = by_status.get("pending", 0) + by_status.get("running", 0)
        return {
            "total": sum(by_status.values()),
            "by_status": {status.value: by_status.get(status.value, 0) for status in JobStatus},
            "by_type": by_type,
            "pending_by_priority": {
                priority.value: by_priority.get(priority.rank, 0) for priority in JobPriority
            },
            "active": active,
            "capacity": self.capacity,
            "utilization": active / self.capacity if self.capacity else 0.0,
            "avg_duration_seconds": sum(durations) / len(durations) if durations else None,
        }

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(
        self,
        job: Job,
        to_status: JobStatus,
        *,
        operator: Optional[str] = None,
        **fields: Any,
    ) -> Job:
        """Write a validated transition. Caller holds the job's record lock."""
        self._validator.validate_transition(
            job.job_id,
            job.status,
            to_status,
            operator=operator,
            reason=fields.get("error"),
        )
        assignments = ", ".join(["status = ?", *(f"{column} = ?" for column in fields)])
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE job_id = ? AND status = ?",
                    (to_status.value, *fields.values(), job.job_id, job.status.value),
                )
        if cur.rowcount != 1:
            raise StateTransitionRaceError(
                f"Job {job.job_id} left {job.status.value} before it could become {to_status.value}",
                details={"job_id": job.job_id},
            )
        if to_status != job.status:
            logger.debug(
                "Job transition",
                extra={
                    "job_id": job.job_id,
                    "from_status": job.status.value,
                    "to_status": to_status.value,
                },
            )
        return self._fetch(job.job_id)

    def _fetch(self, job_id: str) -> Job:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {COLUMNS} FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        if row is None:
            raise JobNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return self._row_to_job(row)

    def _count(self, where: str) -> int:
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) FROM jobs WHERE {where}").fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _row_to_job(row: tuple) -> Job:
        (
            job_id,
            job_type,
            payload,
            priority,
            status,
            created_at,
            started_at,
            completed_at,
            error,
            reason,
            progress,
            result,
            cancel_requested,
            requeued_from,
        ) = row
        return Job(
            job_id=job_id,
            job_type=JobType(job_type),
            payload=json.loads(payload),
            priority=JobPriority.from_rank(priority),
            status=JobStatus(status),
            created_at=_parse(created_at),
            started_at=_parse(started_at),
            completed_at=_parse(completed_at),
            error=error,
            reason=FailureReason(reason) if reason else None,
            progress=float(progress),
            result=json.loads(result) if result else None,
            cancel_requested=bool(cancel_requested),
            requeued_from=requeued_from,
        )


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
