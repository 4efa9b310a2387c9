"""SQLite implementation of QueueBackend.

Local-first, crash-safe queue using:
- sqlite-utils for schema management and reads
- WAL mode for concurrent readers alongside one writer
- BEGIN IMMEDIATE transactions for atomic claim / ack / fail
- Exponential backoff retry for database lock handling
- Leases: an un-acked claim becomes claimable again once it expires
"""

import logging
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlite_utils import Database

from ..errors import LeaseLostError
from ..models import QueueConfig
from .backends import QueueBackend
from .models import Job, JobStatus, StateTransition, utcnow

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    source_storage_key TEXT NOT NULL,
    status TEXT NOT NULL,
    attempt_count INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    backoff_delay_s REAL DEFAULT 5.0,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    available_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    lease_expires_at TEXT,
    worker_id TEXT,
    last_error TEXT,
    result_url TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, available_at, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_video ON jobs(video_id);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES jobs(job_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

MAX_ERROR_CHARS = 500
LEASE_EXPIRED_ERROR = "lease expired"


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so SQL string comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteQueue(QueueBackend):
    """SQLite-based leased job queue.

    One instance owns one connection, so create one per thread (the worker
    pool does this through its queue factory).

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start
    - Claim is a single UPDATE ... RETURNING on the oldest claimable row
    - Ownership is re-checked inside the transaction on ack/fail/heartbeat
    """

    def __init__(
        self,
        db_path: str,
        lease_s: float = 600.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Open (and create if needed) the queue database.

        Args:
            db_path: Path to SQLite database file
            lease_s: Lease length granted on claim and on every heartbeat
            clock: Returns the current UTC time (tests inject a fake clock)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lease_s = lease_s
        self._clock = clock or utcnow

        conn = sqlite3.connect(str(self.db_path), timeout=30)
        self.db = Database(conn)

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    @classmethod
    def from_config(
        cls, config: QueueConfig, clock: Optional[Callable[[], datetime]] = None
    ) -> "SQLiteQueue":
        return cls(config.db_path, lease_s=config.lease_s, clock=clock)

    def close(self) -> None:
        self.db.conn.close()

    def _now(self) -> datetime:
        return self._clock()

    def _with_retry(self, operation: Callable[[], Any], max_retries: int = 3) -> Any:
        """Run a write transaction with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms delays.
        """
        for attempt in range(max_retries):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        return None

    @staticmethod
    def _row_to_job(cursor: sqlite3.Cursor, row: tuple) -> Job:
        columns = [d[0] for d in cursor.description]
        return Job.model_validate(dict(zip(columns, row)))

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        now: datetime,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        # Raw SQL so the row lands in the caller's open transaction
        self.db.conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _ts(now), worker_id, error[:200] if error else None),
        )

    def _owned_job(self, job_id: str, worker_id: str) -> Job:
        """Load an active job leased by ``worker_id`` or raise LeaseLostError."""
        cursor = self.db.conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
        row = cursor.fetchone()
        if row is None:
            raise LeaseLostError(f"Job {job_id} does not exist")
        job = self._row_to_job(cursor, row)
        if job.status != JobStatus.ACTIVE.value or job.worker_id != worker_id:
            raise LeaseLostError(
                f"Job {job_id} is {job.status} (worker={job.worker_id}); {worker_id} lost its lease"
            )
        return job

    def enqueue(self, job: Job) -> str:
        """Insert a waiting job. Re-enqueueing an existing job_id is a no-op."""

        def op() -> str:
            now = self._now()
            with self.db.conn:
                cursor = self.db.conn.execute(
                    """
                    INSERT OR IGNORE INTO jobs (
                        job_id, video_id, source_storage_key, status, attempt_count,
                        max_attempts, backoff_delay_s, created_at, updated_at, available_at
                    ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.job_id,
                        job.video_id,
                        job.source_storage_key,
                        JobStatus.WAITING.value,
                        job.max_attempts,
                        job.backoff_delay_s,
                        _ts(job.created_at),
                        _ts(now),
                        _ts(job.available_at or now),
                    ),
                )
                if cursor.rowcount:
                    self._log_transition(job.job_id, None, JobStatus.WAITING.value, now)
                else:
                    logger.debug("Job %s already queued, enqueue ignored", job.job_id)
            return job.job_id

        return self._with_retry(op)

    def claim_next(self, worker_id: str) -> Optional[Job]:
        """Atomically lease the oldest claimable job.

        Expired leases are requeued first so a crashed worker's job is
        claimable by exactly one other worker.
        """
        self.requeue_expired()

        def op() -> Optional[Job]:
            now = self._now()
            with self.db.conn:
                # BEGIN IMMEDIATE: without the write lock up front, two workers
                # could select the same row before either updates it
                self.db.conn.execute("BEGIN IMMEDIATE")
                cursor = self.db.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        worker_id = ?,
                        attempt_count = attempt_count + 1,
                        started_at = ?,
                        updated_at = ?,
                        lease_expires_at = ?
                    WHERE job_id = (
                        SELECT job_id FROM jobs
                        WHERE status = ? AND available_at <= ?
                        ORDER BY created_at ASC, rowid ASC
                        LIMIT 1
                    )
                    RETURNING *
                    """,
                    (
                        JobStatus.ACTIVE.value,
                        worker_id,
                        _ts(now),
                        _ts(now),
                        _ts(now + timedelta(seconds=self.lease_s)),
                        JobStatus.WAITING.value,
                        _ts(now),
                    ),
                )
                row = cursor.fetchone()
                if row is None:
                    return None
                job = self._row_to_job(cursor, row)
                self._log_transition(
                    job.job_id, JobStatus.WAITING.value, JobStatus.ACTIVE.value, now, worker_id
                )
            return job

        return self._with_retry(op)

    def ack(self, job_id: str, worker_id: str, result_url: Optional[str] = None) -> None:
        def op() -> None:
            now = self._now()
            with self.db.conn:
                self.db.conn.execute("BEGIN IMMEDIATE")
                self._owned_job(job_id, worker_id)
                self.db.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, completed_at = ?, updated_at = ?,
                        lease_expires_at = NULL, result_url = ?
                    WHERE job_id = ?
                    """,
                    (JobStatus.COMPLETED.value, _ts(now), _ts(now), result_url, job_id),
                )
                self._log_transition(
                    job_id, JobStatus.ACTIVE.value, JobStatus.COMPLETED.value, now, worker_id
                )

        self._with_retry(op)

    def fail(self, job_id: str, worker_id: str, error: str, retry: bool = True) -> None:
        """Record a failed attempt.

        Retry logic:
        - If retry and attempt_count < max_attempts: back to waiting, claimable
          after ``backoff_delay_s * 2 ** (attempt_count - 1)``
        - Otherwise: failed (terminal)
        """
        error_snippet = error[:MAX_ERROR_CHARS] if error else None

        def op() -> None:
            now = self._now()
            with self.db.conn:
                self.db.conn.execute("BEGIN IMMEDIATE")
                job = self._owned_job(job_id, worker_id)

                if retry and job.attempt_count < job.max_attempts:
                    delay = job.backoff.delay_for(job.attempt_count)
                    self.db.conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, worker_id = NULL, lease_expires_at = NULL,
                            available_at = ?, updated_at = ?, last_error = ?
                        WHERE job_id = ?
                        """,
                        (
                            JobStatus.WAITING.value,
                            _ts(now + timedelta(seconds=delay)),
                            _ts(now),
                            error_snippet,
                            job_id,
                        ),
                    )
                    self._log_transition(
                        job_id, JobStatus.ACTIVE.value, JobStatus.WAITING.value, now, worker_id,
                        error_snippet,
                    )
                    logger.info(
                        "Job %s attempt %d/%d failed, retrying in %.1fs",
                        job_id, job.attempt_count, job.max_attempts, delay,
                    )
                else:
                    self.db.conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, lease_expires_at = NULL, completed_at = ?,
                            updated_at = ?, last_error = ?
                        WHERE job_id = ?
                        """,
                        (JobStatus.FAILED.value, _ts(now), _ts(now), error_snippet, job_id),
                    )
                    self._log_transition(
                        job_id, JobStatus.ACTIVE.value, JobStatus.FAILED.value, now, worker_id,
                        error_snippet,
                    )
                    logger.warning(
                        "Job %s failed permanently after %d attempt(s)", job_id, job.attempt_count
                    )

        self._with_retry(op)

    def extend_lease(self, job_id: str, worker_id: str) -> None:
        now = self._now()
        with self.db.conn:
            cursor = self.db.conn.execute(
                """
                UPDATE jobs
                SET lease_expires_at = ?, updated_at = ?
                WHERE job_id = ? AND status = ? AND worker_id = ?
                """,
                (
                    _ts(now + timedelta(seconds=self.lease_s)),
                    _ts(now),
                    job_id,
                    JobStatus.ACTIVE.value,
                    worker_id,
                ),
            )
        if cursor.rowcount == 0:
            raise LeaseLostError(f"{worker_id} no longer holds the lease on job {job_id}")

    def requeue_expired(self) -> int:
        """Crash recovery: active jobs past their lease deadline.

        Attempts left: back to waiting, claimable immediately (the next claim
        restarts the whole ladder). None left: failed with "lease expired".
        """

        def op() -> int:
            now = self._now()
            with self.db.conn:
                self.db.conn.execute("BEGIN IMMEDIATE")
                cursor = self.db.conn.execute(
                    "SELECT * FROM jobs WHERE status = ? AND lease_expires_at < ?",
                    (JobStatus.ACTIVE.value, _ts(now)),
                )
                expired = [self._row_to_job(cursor, row) for row in cursor.fetchall()]

                for job in expired:
                    if job.attempt_count < job.max_attempts:
                        to_state = JobStatus.WAITING.value
                        self.db.conn.execute(
                            """
                            UPDATE jobs
                            SET status = ?, worker_id = NULL, lease_expires_at = NULL,
                                available_at = ?, updated_at = ?, last_error = ?
                            WHERE job_id = ?
                            """,
                            (to_state, _ts(now), _ts(now), LEASE_EXPIRED_ERROR, job.job_id),
                        )
                    else:
                        to_state = JobStatus.FAILED.value
                        self.db.conn.execute(
                            """
                            UPDATE jobs
                            SET status = ?, lease_expires_at = NULL, completed_at = ?,
                                updated_at = ?, last_error = ?
                            WHERE job_id = ?
                            """,
                            (to_state, _ts(now), _ts(now), LEASE_EXPIRED_ERROR, job.job_id),
                        )
                    self._log_transition(
                        job.job_id, JobStatus.ACTIVE.value, to_state, now, job.worker_id,
                        LEASE_EXPIRED_ERROR,
                    )
                    logger.warning(
                        "Lease on job %s held by %s expired, now %s", job.job_id, job.worker_id, to_state
                    )
            return len(expired)

        return self._with_retry(op)

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = list(self.db["jobs"].rows_where("job_id = ?", [job_id]))
        if not rows:
            return None
        return Job.model_validate(rows[0])

    def list_jobs(self, status: Optional[str] = None) -> List[Job]:
        if status:
            rows = self.db["jobs"].rows_where("status = ?", [status], order_by="created_at, rowid")
        else:
            rows = self.db["jobs"].rows_where(order_by="created_at, rowid")
        return [Job.model_validate(row) for row in rows]

    def transitions(self, job_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
        return [StateTransition.model_validate(row) for row in rows]

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.db.execute(
            "SELECT status, COUNT(*) FROM jobs GROUP BY status"
        ).fetchall():
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    def retry_failed(self) -> int:
        def op() -> int:
            now = self._now()
            with self.db.conn:
                self.db.conn.execute("BEGIN IMMEDIATE")
                cursor = self.db.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, attempt_count = 0, worker_id = NULL,
                        available_at = ?, updated_at = ?, completed_at = NULL
                    WHERE status = ?
                    RETURNING job_id
                    """,
                    (JobStatus.WAITING.value, _ts(now), _ts(now), JobStatus.FAILED.value),
                )
                job_ids = [row[0] for row in cursor.fetchall()]
                for job_id in job_ids:
                    self._log_transition(
                        job_id, JobStatus.FAILED.value, JobStatus.WAITING.value, now,
                        error="manual retry",
                    )
            return len(job_ids)

        return self._with_retry(op)

    def clear(self) -> None:
        with self.db.conn:
            self.db.conn.execute("DELETE FROM state_transitions")
            self.db.conn.execute("DELETE FROM jobs")
