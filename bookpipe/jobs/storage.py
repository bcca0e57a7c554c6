"""
Storage layer for job persistence.

``JobStorage`` keeps jobs in SQLite; ``MemoryJobStorage`` keeps them in a
dictionary for tests and throwaway runs. Both satisfy ``JobStore``.
"""

import copy
import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Dict, Any, Protocol, Sequence

from ..alignment import WordTimestamp
from ..errors import NotFoundError, PersistenceError
from .models import (
    ACTIVE_STATUSES,
    JobFilter,
    JobKind,
    JobRecord,
    TargetType,
    JobID
)

COUNTER_FIELDS = ('completed_tasks', 'failed_tasks')


class JobStore(Protocol):
    """Persistence contract consumed by the orchestrator and query service."""

    def save_new(self, job: JobRecord) -> JobID: ...

    def load_by_id(self, job_id: JobID) -> Optional[JobRecord]: ...

    def load_by_target(
        self,
        target_type: TargetType,
        target_id: str,
        kind: Optional[JobKind] = None
    ) -> Optional[JobRecord]: ...

    def find_active(self, target_type: TargetType, target_id: str, kind: JobKind) -> Optional[JobRecord]: ...

    def list_by_filter(self, job_filter: JobFilter) -> List[JobRecord]: ...

    def atomic_increment(self, job_id: JobID, field: str, delta: int = 1) -> JobRecord: ...

    def update_job(self, job: JobRecord) -> None: ...

    def add_log(self, job_id: JobID, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None: ...

    def get_logs(self, job_id: JobID, level: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]: ...

    def replace_word_timestamps(self, passage_id: str, timestamps: Sequence[WordTimestamp]) -> None: ...

    def get_word_timestamps(self, passage_id: str) -> List[WordTimestamp]: ...


def _check_counter_field(field: str):
    if field not in COUNTER_FIELDS:
        raise ValueError(f"Not a counter field: {field}")


class JobStorage:
    """
    SQLite-based storage for job persistence.

    Features:
    - Thread-local connections so worker threads never share a cursor
    - WAL mode for concurrent readers while workers write
    - Counter increments done in SQL, never read-modify-write
    - sqlite errors surface as PersistenceError
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize storage.

        Args:
            db_path: Path to SQLite database file. Defaults to ~/.bookpipe/jobs.db
        """
        if db_path is None:
            bookpipe_dir = Path.home() / ".bookpipe"
            bookpipe_dir.mkdir(exist_ok=True)
            db_path = str(bookpipe_dir / "jobs.db")

        self.db_path = db_path
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        self._initialize_database()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.

        Each thread gets its own connection for thread safety.
        """
        if not hasattr(self._local, 'connection'):
            try:
                conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot open job database {self.db_path}: {e}") from e

            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)

        return self._local.connection

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.

        Automatically commits on success, rolls back on error.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def _initialize_database(self):
        """Initialize database schema from schema.sql."""
        schema_path = Path(__file__).parent / "schema.sql"
        schema_sql = schema_path.read_text()

        with self._transaction() as conn:
            conn.executescript(schema_sql)

    # Job operations

    def save_new(self, job: JobRecord) -> JobID:
        """
        Insert a new job.

        Args:
            job: JobRecord to persist

        Returns:
            Job ID of the created job
        """
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO jobs (
                    job_id, target_type, target_id, kind,
                    status, phase, cancel_requested,
                    total_tasks, completed_tasks, failed_tasks,
                    created_at, updated_at, started_at, completed_at,
                    error_message, options
                ) VALUES (
                    :job_id, :target_type, :target_id, :kind,
                    :status, :phase, :cancel_requested,
                    :total_tasks, :completed_tasks, :failed_tasks,
                    :created_at, :updated_at, :started_at, :completed_at,
                    :error_message, :options
                )
            """, job.to_dict())

        return job.job_id

    def load_by_id(self, job_id: JobID) -> Optional[JobRecord]:
        """
        Retrieve a job by ID.

        Returns:
            JobRecord or None if not found
        """
        rows = self._query("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
        if not rows:
            return None
        return JobRecord.from_dict(dict(rows[0]))

    def load_by_target(
        self,
        target_type: TargetType,
        target_id: str,
        kind: Optional[JobKind] = None
    ) -> Optional[JobRecord]:
        """Most recently created job for a target, or None."""
        query = "SELECT * FROM jobs WHERE target_type = ? AND target_id = ?"
        params: List[Any] = [target_type.value, target_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"

        rows = self._query(query, params)
        return JobRecord.from_dict(dict(rows[0])) if rows else None

    def find_active(self, target_type: TargetType, target_id: str, kind: JobKind) -> Optional[JobRecord]:
        """Pending or in-progress job for a target and kind, if any."""
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        rows = self._query(f"""
            SELECT * FROM jobs
            WHERE target_type = ? AND target_id = ? AND kind = ?
              AND status IN ({placeholders})
            ORDER BY created_at DESC
            LIMIT 1
        """, [target_type.value, target_id, kind.value] + [s.value for s in ACTIVE_STATUSES])
        return JobRecord.from_dict(dict(rows[0])) if rows else None

    def list_by_filter(self, job_filter: JobFilter) -> List[JobRecord]:
        """
        Get jobs matching a filter, newest first.

        Args:
            job_filter: Status, target type and kind constraints plus paging

        Returns:
            List of JobRecord instances
        """
        query = "SELECT * FROM jobs"
        clauses = []
        params: List[Any] = []

        if job_filter.status is not None:
            clauses.append("status = ?")
            params.append(job_filter.status.value)
        if job_filter.target_type is not None:
            clauses.append("target_type = ?")
            params.append(job_filter.target_type.value)
        if job_filter.kind is not None:
            clauses.append("kind = ?")
            params.append(job_filter.kind.value)

        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"

        # SQLite needs a LIMIT before OFFSET; -1 means unbounded
        query += " LIMIT ? OFFSET ?"
        params.append(job_filter.take if job_filter.take is not None else -1)
        params.append(max(0, job_filter.skip))

        return [JobRecord.from_dict(dict(row)) for row in self._query(query, params)]

    def atomic_increment(self, job_id: JobID, field: str, delta: int = 1) -> JobRecord:
        """
        Increment a counter in one statement and return the updated job.

        Raises:
            NotFoundError: If the job does not exist
            PersistenceError: If the write fails
        """
        _check_counter_field(field)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {field} = {field} + ?, updated_at = ? WHERE job_id = ?",
                (delta, time.time(), job_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError("job", job_id)
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()

        return JobRecord.from_dict(dict(row))

    def update_job(self, job: JobRecord):
        """
        Write status fields of an existing job.

        Counters are left alone; they only move through atomic_increment.
        """
        with self._transaction() as conn:
            conn.execute("""
                UPDATE jobs SET
                    status = :status,
                    phase = :phase,
                    cancel_requested = :cancel_requested,
                    updated_at = :updated_at,
                    started_at = :started_at,
                    completed_at = :completed_at,
                    error_message = :error_message
                WHERE job_id = :job_id
            """, job.to_dict())

    # Job log operations

    def add_log(
        self,
        job_id: JobID,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """
        Add a log entry for a job.

        Args:
            job_id: Job ID
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Log message
            metadata: Optional additional context
        """
        metadata_json = json.dumps(metadata, default=str) if metadata else None

        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO job_logs (job_id, timestamp, level, message, metadata)
                VALUES (?, ?, ?, ?, ?)
            """, (job_id, time.time(), level, message, metadata_json))

    def get_logs(
        self,
        job_id: JobID,
        level: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get log entries for a job, newest first.

        Args:
            job_id: Job ID
            level: Filter by log level (None for all)
            limit: Maximum number of entries to return

        Returns:
            List of log entry dictionaries
        """
        query = "SELECT * FROM job_logs WHERE job_id = ?"
        params: List[Any] = [job_id]

        if level is not None:
            query += " AND level = ?"
            params.append(level)

        query += " ORDER BY timestamp DESC, id DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        logs = []
        for row in self._query(query, params):
            log_dict = dict(row)
            if log_dict.get('metadata'):
                log_dict['metadata'] = json.loads(log_dict['metadata'])
            logs.append(log_dict)

        return logs

    # Word timestamp operations

    def replace_word_timestamps(self, passage_id: str, timestamps: Sequence[WordTimestamp]):
        """Store a passage's word timestamps, superseding any earlier set."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM word_timestamps WHERE passage_id = ?", (passage_id,))
            conn.executemany("""
                INSERT INTO word_timestamps (passage_id, position, word, start_time, end_time)
                VALUES (?, ?, ?, ?, ?)
            """, [
                (passage_id, position, stamp.word, stamp.start_time, stamp.end_time)
                for position, stamp in enumerate(timestamps)
            ])

    def get_word_timestamps(self, passage_id: str) -> List[WordTimestamp]:
        rows = self._query("""
            SELECT word, start_time, end_time FROM word_timestamps
            WHERE passage_id = ?
            ORDER BY position
        """, (passage_id,))
        return [
            WordTimestamp(row['word'], row['start_time'], row['end_time'], passage_id)
            for row in rows
        ]

    def close(self):
        """Close every connection opened by this storage."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        if hasattr(self._local, 'connection'):
            delattr(self._local, 'connection')


class MemoryJobStorage:
    """
    Dictionary-backed JobStore.

    A single lock serializes every operation, which makes each call
    linearizable. Records are copied on the way in and out so callers never
    alias stored state.
    """

    def __init__(self):
        self._jobs: Dict[JobID, JobRecord] = {}
        self._order: List[JobID] = []
        self._logs: List[Dict[str, Any]] = []
        self._timestamps: Dict[str, List[WordTimestamp]] = {}
        self._lock = threading.Lock()
        self._log_seq = 0

    def save_new(self, job: JobRecord) -> JobID:
        with self._lock:
            if job.job_id in self._jobs:
                raise PersistenceError(f"Duplicate job id: {job.job_id}")
            self._jobs[job.job_id] = copy.deepcopy(job)
            self._order.append(job.job_id)
        return job.job_id

    def load_by_id(self, job_id: JobID) -> Optional[JobRecord]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def _newest_first(self) -> List[JobRecord]:
        # Insertion order breaks ties between equal created_at values
        ranked = sorted(
            enumerate(self._order),
            key=lambda item: (self._jobs[item[1]].created_at, item[0]),
            reverse=True
        )
        return [self._jobs[job_id] for _, job_id in ranked]

    def load_by_target(
        self,
        target_type: TargetType,
        target_id: str,
        kind: Optional[JobKind] = None
    ) -> Optional[JobRecord]:
        with self._lock:
            for job in self._newest_first():
                if job.target_type == target_type and job.target_id == target_id:
                    if kind is None or job.kind == kind:
                        return copy.deepcopy(job)
        return None

    def find_active(self, target_type: TargetType, target_id: str, kind: JobKind) -> Optional[JobRecord]:
        with self._lock:
            for job in self._newest_first():
                if (job.target_type == target_type and job.target_id == target_id
                        and job.kind == kind and job.status in ACTIVE_STATUSES):
                    return copy.deepcopy(job)
        return None

    def list_by_filter(self, job_filter: JobFilter) -> List[JobRecord]:
        with self._lock:
            matches = [
                job for job in self._newest_first()
                if (job_filter.status is None or job.status == job_filter.status)
                and (job_filter.target_type is None or job.target_type == job_filter.target_type)
                and (job_filter.kind is None or job.kind == job_filter.kind)
            ]
            start = max(0, job_filter.skip)
            end = None if job_filter.take is None else start + job_filter.take
            return [copy.deepcopy(job) for job in matches[start:end]]

    def atomic_increment(self, job_id: JobID, field: str, delta: int = 1) -> JobRecord:
        _check_counter_field(field)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError("job", job_id)
            if job.accounted_tasks + delta > job.total_tasks:
                raise PersistenceError(
                    f"Increment of {field} would exceed total_tasks for job {job_id}"
                )
            setattr(job, field, getattr(job, field) + delta)
            job.updated_at = time.time()
            return copy.deepcopy(job)

    def update_job(self, job: JobRecord):
        with self._lock:
            stored = self._jobs.get(job.job_id)
            if stored is None:
                return
            stored.status = job.status
            stored.phase = job.phase
            stored.cancel_requested = job.cancel_requested
            stored.updated_at = job.updated_at
            stored.started_at = job.started_at
            stored.completed_at = job.completed_at
            stored.error_message = job.error_message

    def add_log(
        self,
        job_id: JobID,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ):
        with self._lock:
            self._log_seq += 1
            self._logs.append({
                'id': self._log_seq,
                'job_id': job_id,
                'timestamp': time.time(),
                'level': level,
                'message': message,
                'metadata': copy.deepcopy(metadata) if metadata else None,
            })

    def get_logs(
        self,
        job_id: JobID,
        level: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            logs = [
                dict(entry) for entry in reversed(self._logs)
                if entry['job_id'] == job_id and (level is None or entry['level'] == level)
            ]
        return logs[:limit] if limit is not None else logs

    def replace_word_timestamps(self, passage_id: str, timestamps: Sequence[WordTimestamp]):
        with self._lock:
            self._timestamps[passage_id] = list(timestamps)

    def get_word_timestamps(self, passage_id: str) -> List[WordTimestamp]:
        with self._lock:
            return list(self._timestamps.get(passage_id, []))

    def close(self):
        pass
