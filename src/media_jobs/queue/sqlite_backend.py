"""SQLite implementations of Broker and StatusTracker.

This module provides the local-first, crash-safe broker using:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic dequeue
- Exponential backoff retry for database lock handling
- asyncio events so waiting consumers wake on enqueue instead of polling

Broker and tracker share one connection. Every statement runs under a
process-level lock because calls arrive from ``asyncio.to_thread`` workers.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlite_utils import Database

from .backends import Broker, StatusTracker
from .models import BrokerJob, DeliveryState, JobStatus, JobStatusRecord

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
-- Broker delivery table
CREATE TABLE IF NOT EXISTS broker_jobs (
    job_id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    project_id TEXT NOT NULL,
    input_data TEXT,
    state TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    attempt_count INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 1,
    available_at REAL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    started_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_broker_dequeue
    ON broker_jobs(queue_name, state, priority ASC, created_at ASC);

-- Status API records
CREATE TABLE IF NOT EXISTS job_status (
    job_id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    project_id TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER DEFAULT 0,
    input_data TEXT,
    output_data TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Delivery state transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""


def _now() -> str:
    return datetime.now().isoformat()


def _load_json(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteDatabase:
    """Shared SQLite connection with schema and a write lock."""

    def __init__(self, db_path: str):
        """Open (and create) the database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self.db = Database(conn)
        self.lock = threading.RLock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    @contextmanager
    def transaction(self, max_retries: int = 3) -> Iterator[sqlite3.Connection]:
        """Locked BEGIN IMMEDIATE transaction with backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms delays.
        """
        with self.lock:
            conn = self.db.conn
            for attempt in range(max_retries):
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    break
                except sqlite3.OperationalError as e:
                    if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                        time.sleep(0.1 * (2 ** attempt))
                        continue
                    raise
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def fetch_rows(self, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        with self.lock:
            cursor = self.db.conn.execute(sql, params)
            columns = [d[0] for d in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def close(self) -> None:
        with self.lock:
            self.db.conn.close()


def _cursor_dicts(cursor) -> List[Dict[str, Any]]:
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class SQLiteBroker(Broker):
    """SQLite-based broker with atomic dequeue operations.

    Features:
    - Atomic dequeue via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Retry with backoff via ``available_at``
    - Heartbeat support for long-running jobs
    - Stall recovery via reset_stale_running()
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - Prevents race where multiple consumers claim same job
    """

    def __init__(self, database: SQLiteDatabase):
        self.database = database
        self._events: Dict[str, asyncio.Event] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, job: BrokerJob) -> bool:
        with self.database.transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO broker_jobs (
                    job_id, queue_name, project_id, input_data, state, priority,
                    attempt_count, max_attempts, available_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job.job_id,
                job.queue_name,
                job.project_id,
                json.dumps(job.input_data),
                DeliveryState.PENDING.value,
                job.priority,
                job.attempt_count,
                job.max_attempts,
                job.available_at,
                job.created_at.isoformat(),
                _now(),
            ))
            inserted = cursor.rowcount == 1
            if inserted:
                self._log_transition(conn, job.job_id, None, DeliveryState.PENDING.value)

        if inserted:
            self.wake(job.queue_name)
        return inserted

    def remove_pending(self, job_id: str) -> bool:
        with self.database.transaction() as conn:
            cursor = conn.execute("""
                UPDATE broker_jobs
                SET state = ?, last_error = ?, updated_at = ?
                WHERE job_id = ? AND state = ?
            """, (DeliveryState.DEAD.value, "Job cancelled", _now(), job_id, DeliveryState.PENDING.value))
            removed = cursor.rowcount == 1
            if removed:
                self._log_transition(
                    conn, job_id, DeliveryState.PENDING.value, DeliveryState.DEAD.value,
                    error="Job cancelled",
                )
        return removed

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue(self, queue_name: str, worker_id: str) -> Optional[BrokerJob]:
        """Atomically claim next available job and mark it active.

        Atomicity: Uses BEGIN IMMEDIATE + UPDATE...RETURNING
        """
        now = _now()
        with self.database.transaction() as conn:
            cursor = conn.execute("""
                UPDATE broker_jobs
                SET state = ?,
                    worker_id = ?,
                    started_at = ?,
                    last_heartbeat = ?,
                    updated_at = ?
                WHERE job_id = (
                    SELECT job_id FROM broker_jobs
                    WHERE queue_name = ? AND state = ? AND available_at <= ?
                    ORDER BY priority ASC, created_at ASC, rowid ASC
                    LIMIT 1
                )
                RETURNING *
            """, (
                DeliveryState.ACTIVE.value,
                worker_id,
                now,
                now,
                now,
                queue_name,
                DeliveryState.PENDING.value,
                time.time(),
            ))
            rows = _cursor_dicts(cursor)
            if not rows:
                return None

            self._log_transition(
                conn, rows[0]["job_id"], DeliveryState.PENDING.value, DeliveryState.ACTIVE.value,
                worker_id=worker_id,
            )
        return self._row_to_job(rows[0])

    async def fetch(
        self,
        queue_name: str,
        worker_id: str,
        timeout: float,
        stop: Optional[asyncio.Event] = None,
    ) -> Optional[BrokerJob]:
        """Claim a job, suspending on the queue's wake-up event while empty."""
        loop = asyncio.get_running_loop()
        self._loop = loop
        event = self._events.setdefault(queue_name, asyncio.Event())
        deadline = loop.time() + timeout

        while True:
            if stop is not None and stop.is_set():
                return None

            event.clear()
            job = await asyncio.to_thread(self.dequeue, queue_name, worker_id)
            if job is not None:
                return job

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                await asyncio.wait_for(event.wait(), remaining)
            except asyncio.TimeoutError:
                return None

    def wake(self, queue_name: str, delay_s: float = 0.0) -> None:
        """Wake consumers waiting on a queue; safe to call from any thread."""
        loop = self._loop
        event = self._events.get(queue_name)
        if loop is None or event is None or loop.is_closed():
            return
        if delay_s > 0:
            loop.call_soon_threadsafe(loop.call_later, delay_s, event.set)
        else:
            loop.call_soon_threadsafe(event.set)

    def ack_success(self, job_id: str) -> None:
        with self.database.transaction() as conn:
            conn.execute("""
                UPDATE broker_jobs
                SET state = ?, worker_id = NULL, updated_at = ?
                WHERE job_id = ?
            """, (DeliveryState.DONE.value, _now(), job_id))
            self._log_transition(conn, job_id, DeliveryState.ACTIVE.value, DeliveryState.DONE.value)

    def ack_fail(self, job_id: str, error: str, retry: bool, delay_s: float = 0.0) -> bool:
        """Record a failed attempt, re-queueing while attempts remain.

        Retry logic:
        - If retry=True and attempts < max_attempts: back to 'pending' after delay_s
        - Otherwise: 'dead' (terminal)
        """
        error_snippet = error[:500] if error else None

        with self.database.transaction() as conn:
            rows = _cursor_dicts(conn.execute(
                "SELECT queue_name, attempt_count, max_attempts FROM broker_jobs WHERE job_id = ?",
                (job_id,),
            ))
            if not rows:
                logger.warning("ack_fail for unknown job %s", job_id)
                return False

            row = rows[0]
            new_attempt = row["attempt_count"] + 1
            requeue = retry and new_attempt < row["max_attempts"]
            to_state = DeliveryState.PENDING if requeue else DeliveryState.DEAD

            conn.execute("""
                UPDATE broker_jobs
                SET state = ?,
                    attempt_count = ?,
                    available_at = ?,
                    last_error = ?,
                    worker_id = NULL,
                    updated_at = ?
                WHERE job_id = ?
            """, (
                to_state.value,
                new_attempt,
                time.time() + delay_s if requeue else 0,
                error_snippet,
                _now(),
                job_id,
            ))
            self._log_transition(
                conn, job_id, DeliveryState.ACTIVE.value, to_state.value, error=error_snippet
            )

        if requeue:
            self.wake(row["queue_name"], delay_s)
        return requeue

    def update_heartbeat(self, job_id: str) -> None:
        """Update heartbeat timestamp; only active jobs are touched."""
        with self.database.transaction() as conn:
            conn.execute("""
                UPDATE broker_jobs
                SET last_heartbeat = ?
                WHERE job_id = ? AND state = ?
            """, (_now(), job_id, DeliveryState.ACTIVE.value))

    def reset_stale_running(self, timeout_s: float) -> List[Tuple[str, str]]:
        """Stall recovery: reset active jobs whose heartbeat is older than timeout_s.

        Implementation:
        - Resets to 'pending' without incrementing attempt_count
        - Clears worker_id
        - Logs transition for audit
        """
        cutoff = (datetime.now() - timedelta(seconds=timeout_s)).isoformat()

        with self.database.transaction() as conn:
            cursor = conn.execute("""
                UPDATE broker_jobs
                SET state = ?, worker_id = NULL, available_at = 0, updated_at = ?
                WHERE state = ?
                  AND (
                      last_heartbeat < ?
                      OR (last_heartbeat IS NULL AND started_at < ?)
                  )
                RETURNING job_id, queue_name
            """, (
                DeliveryState.PENDING.value,
                _now(),
                DeliveryState.ACTIVE.value,
                cutoff,
                cutoff,
            ))
            reset = [(row[0], row[1]) for row in cursor.fetchall()]

            for job_id, _ in reset:
                self._log_transition(
                    conn, job_id, DeliveryState.ACTIVE.value, DeliveryState.PENDING.value,
                    error="Reset stalled job (no heartbeat)",
                )

        for queue_name in {q for _, q in reset}:
            self.wake(queue_name)
        return reset

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[BrokerJob]:
        rows = self.database.fetch_rows("SELECT * FROM broker_jobs WHERE job_id = ?", (job_id,))
        return self._row_to_job(rows[0]) if rows else None

    def counts(self, queue_name: str) -> Dict[str, int]:
        rows = self.database.fetch_rows(
            "SELECT state, COUNT(*) AS n FROM broker_jobs WHERE queue_name = ? GROUP BY state",
            (queue_name,),
        )
        result = {state.value: 0 for state in DeliveryState}
        for row in rows:
            result[row["state"]] = row["n"]
        return result

    def transitions(self, job_id: str) -> List[Dict[str, Any]]:
        """Audit trail of delivery state changes for one job."""
        return self.database.fetch_rows(
            "SELECT * FROM state_transitions WHERE job_id = ? ORDER BY id",
            (job_id,),
        )

    def _row_to_job(self, row: Dict[str, Any]) -> BrokerJob:
        return BrokerJob(
            job_id=row["job_id"],
            queue_name=row["queue_name"],
            project_id=row["project_id"],
            input_data=_load_json(row["input_data"]) or {},
            state=DeliveryState(row["state"]),
            priority=row["priority"],
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            available_at=row["available_at"] or 0.0,
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            last_heartbeat=datetime.fromisoformat(row["last_heartbeat"]) if row["last_heartbeat"] else None,
            worker_id=row["worker_id"],
            last_error=row["last_error"],
        )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        conn.execute("""
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (job_id, from_state, to_state, _now(), worker_id, error[:200] if error else None))


class SQLiteStatusTracker(StatusTracker):
    """Job status records stored next to the broker tables."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database

    def create(self, job_id, job_type, project_id, input_data) -> bool:
        now = _now()
        with self.database.transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO job_status (
                    job_id, job_type, project_id, status, progress, input_data, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?, ?)
            """, (job_id, job_type, project_id, JobStatus.QUEUED.value, json.dumps(input_data), now, now))
            return cursor.rowcount == 1

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: Optional[int] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        status = JobStatus(status)

        with self.database.transaction() as conn:
            rows = _cursor_dicts(conn.execute(
                "SELECT status, progress FROM job_status WHERE job_id = ?", (job_id,)
            ))
            if not rows:
                logger.warning("Status update for unknown job %s ignored", job_id)
                return False

            current = JobStatus(rows[0]["status"])
            if current.is_terminal:
                logger.warning(
                    "Job %s is already %s, ignoring transition to %s",
                    job_id, current.value, status.value,
                )
                return False

            stored = rows[0]["progress"] or 0
            if status == JobStatus.COMPLETED:
                new_progress = 100
            elif progress is None:
                new_progress = stored
            else:
                new_progress = max(stored, min(100, max(0, int(progress))))

            conn.execute("""
                UPDATE job_status
                SET status = ?,
                    progress = ?,
                    output_data = ?,
                    error_message = ?,
                    updated_at = ?
                WHERE job_id = ?
            """, (
                status.value,
                new_progress,
                json.dumps(output) if status == JobStatus.COMPLETED and output is not None else None,
                error if status == JobStatus.FAILED else None,
                _now(),
                job_id,
            ))
        return True

    def get_job_status(self, job_id: str) -> Optional[JobStatusRecord]:
        rows = self.database.fetch_rows("SELECT * FROM job_status WHERE job_id = ?", (job_id,))
        if not rows:
            return None

        row = rows[0]
        return JobStatusRecord(
            job_id=row["job_id"],
            job_type=row["job_type"],
            project_id=row["project_id"],
            status=JobStatus(row["status"]),
            progress=row["progress"],
            input_data=_load_json(row["input_data"]) or {},
            output_data=_load_json(row["output_data"]),
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
