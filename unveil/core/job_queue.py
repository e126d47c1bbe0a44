"""
Durable Job Queue

SQLite-backed work items with exactly-once-in-progress claiming. Several
workers (threads or processes) may share one database file: a claim is a
single ``BEGIN IMMEDIATE`` transaction that selects the oldest pending row
and marks it processing, so two workers never receive the same job.

Statuses are the literal strings ``pending``, ``processing``, ``completed``
and ``failed``. Terminal jobs are never re-claimed; putting one back in the
queue is the explicit ``requeue`` operation.
"""

from __future__ import annotations

import logging
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from .errors import (
    AlreadyTerminalError,
    ClaimConflictError,
    DuplicateJobError,
    JobNotFoundError,
    QueueFaultError,
    UnclaimedJobError,
)


PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
TERMINAL = frozenset({COMPLETED, FAILED})

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    added_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_jobs_status_added ON jobs (status, added_at, id);
"""

T = TypeVar("T")


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Job:
    id: int
    url: str
    status: str
    added_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(**{k: row[k] for k in row.keys()})

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL


class JobQueue:
    """
    Durable queue of archival jobs.

    Args:
        db_path: SQLite database file (``:memory:`` for a private queue)
        busy_timeout: Seconds SQLite waits on a locked database per attempt
        max_attempts: Attempts for a contended operation before QueueFaultError
        backoff: Base delay in seconds; doubled each attempt, with jitter
    """

    def __init__(self, db_path: str = "unveil_queue.db", busy_timeout: float = 5.0,
                 max_attempts: int = 5, backoff: float = 0.05):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, timeout=busy_timeout,
                                     isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # Transactions and retry

    @contextmanager
    def _transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield self._conn
                # A busy COMMIT leaves the transaction open; it is rolled back
                # below so the retry starts on a clean connection.
                self._conn.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    def _with_retry(self, name: str, operation: Callable[[], T]) -> T:
        """
        Run ``operation``, retrying lock contention and lost claims with
        exponential backoff. Exhaustion surfaces as QueueFaultError.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except (sqlite3.OperationalError, ClaimConflictError) as e:
                last_error = e
                delay = self.backoff * (2 ** (attempt - 1)) * (1 + random.random())
                self.logger.debug(f"{name}: attempt {attempt}/{self.max_attempts} failed ({e}); "
                                  f"retrying in {delay:.2f}s")
                time.sleep(delay)
        raise QueueFaultError(f"{name} failed after {self.max_attempts} attempts: {last_error}",
                              stage=name, original=last_error)

    # Submission

    def enqueue(self, url: str) -> Job:
        """
        Add ``url`` as a pending job.

        Raises:
            DuplicateJobError: if the URL is already present in any status
            ValueError: for an empty URL
        """
        url = (url or "").strip()
        if not url:
            raise ValueError("URL cannot be empty")

        def op() -> Job:
            try:
                with self._transaction() as conn:
                    cur = conn.execute(
                        "INSERT INTO jobs (url, status, added_at) VALUES (?, ?, ?)",
                        (url, PENDING, _utc_now()),
                    )
                    row = conn.execute("SELECT * FROM jobs WHERE id = ?", (cur.lastrowid,)).fetchone()
            except sqlite3.IntegrityError as e:
                raise DuplicateJobError(url) from e
            return Job.from_row(row)

        job = self._with_retry("submit", op)
        self.logger.info(f"Queued job {job.id}: {url}")
        return job

    def submit(self, url: str) -> bool:
        """Queue ``url``; False (and a logged Duplicate) if it is already present."""
        try:
            self.enqueue(url)
            return True
        except DuplicateJobError as e:
            self.logger.warning(str(e))
            return False

    # Claiming

    def _claim_once(self) -> Optional[Job]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM jobs WHERE status = ? ORDER BY added_at, id LIMIT 1",
                (PENDING,),
            ).fetchone()
            if row is None:
                return None
            cur = conn.execute(
                "UPDATE jobs SET status = ?, started_at = ? WHERE id = ? AND status = ?",
                (PROCESSING, _utc_now(), row["id"], PENDING),
            )
            if cur.rowcount != 1:
                raise ClaimConflictError(f"Job {row['id']} was claimed by another worker", stage="claim")
            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
        return Job.from_row(claimed)

    def claim_next(self) -> Optional[Job]:
        """
        Atomically take the oldest pending job and mark it processing.

        Returns:
            The claimed Job, or None when nothing is pending.

        Raises:
            QueueFaultError: if the claim could not complete within the retry budget
        """
        job = self._with_retry("claim", self._claim_once)
        if job is not None:
            self.logger.info(f"Claimed job {job.id}: {job.url}")
        return job

    # Transitions

    def _get(self, conn: sqlite3.Connection, job_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def transition(self, job_id: int, status: str, error_message: Optional[str] = None) -> Job:
        """
        Move a claimed (processing) job to a terminal status, recording
        ``completed_at``.

        Raises:
            AlreadyTerminalError: if the job is already completed or failed
            UnclaimedJobError: if the job is still pending
            JobNotFoundError: if no such job exists
        """
        if status not in TERMINAL:
            raise ValueError(f"Not a terminal status: {status}")

        def op() -> Job:
            with self._transaction() as conn:
                row = self._get(conn, job_id)
                if row["status"] in TERMINAL:
                    raise AlreadyTerminalError(job_id, row["status"])
                if row["status"] == PENDING:
                    raise UnclaimedJobError(job_id)
                conn.execute(
                    "UPDATE jobs SET status = ?, completed_at = ?, error_message = ? WHERE id = ?",
                    (status, _utc_now(), error_message, job_id),
                )
                return Job.from_row(self._get(conn, job_id))

        return self._with_retry(status, op)

    def complete(self, job_id: int) -> bool:
        try:
            self.transition(job_id, COMPLETED)
            self.logger.info(f"Job {job_id} completed")
            return True
        except AlreadyTerminalError as e:
            self.logger.warning(str(e))
            return False

    def fail(self, job_id: int, message: str) -> bool:
        try:
            self.transition(job_id, FAILED, message)
            self.logger.info(f"Job {job_id} failed: {message}")
            return True
        except AlreadyTerminalError as e:
            self.logger.warning(str(e))
            return False

    # Administration

    def requeue(self, job_id: int) -> bool:
        """
        Return a terminal or orphaned processing job to pending and bump
        its retry count. A job that is already pending is left alone.
        """

        def op() -> bool:
            with self._transaction() as conn:
                row = self._get(conn, job_id)
                if row["status"] == PENDING:
                    return False
                conn.execute(
                    "UPDATE jobs SET status = ?, added_at = ?, started_at = NULL, completed_at = NULL, "
                    "error_message = NULL, retry_count = retry_count + 1 WHERE id = ?",
                    (PENDING, _utc_now(), job_id),
                )
                return True

        changed = self._with_retry("requeue", op)
        if changed:
            self.logger.info(f"Requeued job {job_id}")
        return changed

    def reclaim_stale(self, older_than: timedelta) -> List[int]:
        """
        Return ``processing`` jobs whose ``started_at`` is older than the
        threshold to ``pending``. Operator action only; never called by a worker.
        """
        cutoff = (datetime.now(tz=timezone.utc) - older_than).isoformat(timespec="microseconds")

        def op() -> List[int]:
            with self._transaction() as conn:
                ids = [r["id"] for r in conn.execute(
                    "SELECT id FROM jobs WHERE status = ? AND started_at < ? ORDER BY id",
                    (PROCESSING, cutoff),
                )]
                for job_id in ids:
                    conn.execute(
                        "UPDATE jobs SET status = ?, started_at = NULL, retry_count = retry_count + 1 "
                        "WHERE id = ? AND status = ?",
                        (PENDING, job_id, PROCESSING),
                    )
                return ids

        ids = self._with_retry("reclaim", op)
        if ids:
            self.logger.warning(f"Reclaimed {len(ids)} stale processing job(s): {ids}")
        return ids

    # Queries

    def get(self, job_id: int) -> Job:
        with self._lock:
            return Job.from_row(self._get(self._conn, job_id))

    def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[Job]:
        if status is not None and status not in STATUSES:
            raise ValueError(f"Unknown status: {status}")
        query = "SELECT * FROM jobs"
        params: tuple = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY added_at, id LIMIT ?"
        with self._lock:
            rows = self._conn.execute(query, params + (int(limit),)).fetchall()
        return [Job.from_row(r) for r in rows]

    def count_url(self, url: str) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM jobs WHERE url = ?", ((url or "").strip(),)).fetchone()
        return int(row[0])

    def stats(self) -> Dict[str, int]:
        """Counts per status (every status present, zero if empty)."""
        counts = {s: 0 for s in STATUSES}
        with self._lock:
            for row in self._conn.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status"):
                counts[row["status"]] = int(row["n"])
        return counts
