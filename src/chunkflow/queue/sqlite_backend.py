"""SQLite implementations of ItemStore and ChunkQueue.

This module provides the local-first, crash-safe storage using:
- sqlite-utils for schema and row access
- WAL mode for concurrent readers alongside one writer
- One connection per thread (workers, janitor and API threads never share)
- BEGIN IMMEDIATE transactions for atomic lease and compare-and-set
- Exponential backoff retry for database lock handling
"""

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for queue functionality. "
        "Install it with: pip install sqlite-utils"
    )

from ..errors import MalformedChunkError
from .backends import ChunkQueue, ItemStore
from .models import (
    ChunkPayload,
    ItemStatus,
    Job,
    JobProgress,
    JobStatus,
    QueueEntry,
    QueueState,
    WorkItem,
    parse_chunk,
)

logger = logging.getLogger(__name__)


STORE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    total_items INTEGER NOT NULL DEFAULT 0,
    processed_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    generation INTEGER NOT NULL DEFAULT 0,
    file_name TEXT,
    content_type TEXT NOT NULL DEFAULT 'company',
    artifact_path TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);

CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    generation INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_job_status ON work_items(job_id, status);
CREATE INDEX IF NOT EXISTS idx_items_job_position ON work_items(job_id, position);
"""

# No foreign key on job_id: entries of deleted jobs must survive as orphans
# until the janitor reconciles them.
QUEUE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chunk_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 1,
    worker_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    available_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    last_heartbeat TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_queue_state ON chunk_queue(state, priority DESC, id ASC);
CREATE INDEX IF NOT EXISTS idx_queue_job ON chunk_queue(job_id);
"""


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def with_lock_retry(fn: Callable[[], Any], max_retries: int = 3) -> Any:
    """Run ``fn``, retrying with exponential backoff on SQLITE_BUSY.

    Backoff: 100ms, 200ms, 400ms...
    """
    for attempt in range(max_retries):
        try:
            return fn()
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                time.sleep(0.1 * (2 ** attempt))
                continue
            raise


class SQLiteDatabase:
    """Per-thread sqlite-utils handles onto one database file.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction()`` which opens ``BEGIN IMMEDIATE`` so the write lock is
    held from the first statement.
    """

    def __init__(self, db_path: Union[str, Path], busy_timeout_s: float = 30.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []

    @property
    def db(self) -> Database:
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_s,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
            conn.execute("PRAGMA foreign_keys=ON")
            db = Database(conn)
            self._local.db = db
            with self._lock:
                self._connections.append(conn)
        return db

    @property
    def conn(self) -> sqlite3.Connection:
        return self.db.conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the write lock for the duration of the block."""
        conn = self.conn
        with_lock_retry(lambda: conn.execute("BEGIN IMMEDIATE"))
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def executescript(self, sql: str) -> None:
        self.db.executescript(sql)

    def close(self) -> None:
        """Close every connection opened through this instance."""
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.ProgrammingError:
                pass
        self._local = threading.local()


def _as_database(database: Union[str, Path, SQLiteDatabase]) -> SQLiteDatabase:
    if isinstance(database, SQLiteDatabase):
        return database
    return SQLiteDatabase(database)


def _rows(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    columns = [c[0] for c in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class SQLiteItemStore(ItemStore):
    """SQLite-backed store for jobs and work items.

    Features:
    - Aggregate counts updated by atomic SQL increments
    - Compare-and-set status transitions inside BEGIN IMMEDIATE
    - Counts always clamped so processed + failed <= total
    - Items cascade-deleted with their job
    """

    def __init__(self, database: Union[str, Path, SQLiteDatabase]):
        """Initialize the store.

        Args:
            database: Path to the SQLite file, or a shared SQLiteDatabase

        Creates schema if it doesn't exist.
        """
        self.database = _as_database(database)
        self.database.executescript(STORE_SCHEMA_SQL)

    @property
    def db(self) -> Database:
        return self.database.db

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(
        self,
        job_id: str,
        total_items: int,
        file_name: Optional[str] = None,
        content_type: str = "company",
        artifact_path: Optional[str] = None,
    ) -> Job:
        now = _now()
        self.db["jobs"].insert({
            "id": job_id,
            "status": JobStatus.PENDING.value,
            "total_items": total_items,
            "processed_count": 0,
            "failed_count": 0,
            "generation": 0,
            "file_name": file_name,
            "content_type": content_type,
            "artifact_path": artifact_path,
            "error": None,
            "created_at": now,
            "updated_at": now,
        })
        logger.info("Created job %s with %d items", job_id, total_items)
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def list_jobs(self, limit: int = 100) -> List[Job]:
        rows = self.db["jobs"].rows_where(order_by="created_at DESC", limit=limit)
        return [self._row_to_job(row) for row in rows]

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        processed: Optional[int] = None,
        failed: Optional[int] = None,
        expected: Optional[Iterable[JobStatus]] = None,
        bump_generation: bool = False,
        error: Optional[str] = None,
    ) -> Optional[Job]:
        expected_values = {JobStatus(s).value for s in expected} if expected is not None else None

        with self.database.transaction() as conn:
            cursor = conn.execute(
                "SELECT status, total_items, processed_count, failed_count, generation "
                "FROM jobs WHERE id = ?",
                (job_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None

            current, total, cur_processed, cur_failed, generation = row
            if expected_values is not None and current not in expected_values:
                return None

            new_processed = cur_processed if processed is None else processed
            new_failed = cur_failed if failed is None else failed
            new_processed = max(0, min(new_processed, total))
            new_failed = max(0, min(new_failed, total - new_processed))
            if bump_generation:
                generation += 1

            conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    processed_count = ?,
                    failed_count = ?,
                    generation = ?,
                    error = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    JobStatus(status).value,
                    new_processed,
                    new_failed,
                    generation,
                    error,
                    _now(),
                    job_id,
                ),
            )

        if current != JobStatus(status).value:
            logger.info("Job %s: %s -> %s", job_id, current, JobStatus(status).value)
        return self.get_job(job_id)

    def apply_chunk_result(
        self, job_id: str, generation: int, processed: int, failed: int
    ) -> bool:
        """Add chunk deltas in a single UPDATE, clamped to total_items.

        SET expressions see the pre-update row, so the failed clamp uses the
        new processed value recomputed inline.
        """
        def _apply() -> int:
            cursor = self.database.conn.execute(
                """
                UPDATE jobs
                SET processed_count = MIN(processed_count + ?, total_items),
                    failed_count = MIN(
                        failed_count + ?,
                        total_items - MIN(processed_count + ?, total_items)
                    ),
                    updated_at = ?
                WHERE id = ? AND status = ? AND generation = ?
                """,
                (
                    processed,
                    failed,
                    processed,
                    _now(),
                    job_id,
                    JobStatus.PROCESSING.value,
                    generation,
                ),
            )
            return cursor.rowcount

        return with_lock_retry(_apply) > 0

    def refresh_counts(
        self,
        job_id: str,
        expected: Optional[Iterable[JobStatus]] = None,
        generation: Optional[int] = None,
    ) -> bool:
        expected_values = {JobStatus(s).value for s in expected} if expected is not None else None

        with self.database.transaction() as conn:
            row = conn.execute(
                "SELECT status, generation FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                return False
            status, current_generation = row
            if expected_values is not None and status not in expected_values:
                return False
            if generation is not None and current_generation != generation:
                return False

            conn.execute(
                """
                UPDATE jobs
                SET processed_count = (
                        SELECT COUNT(*) FROM work_items WHERE job_id = ? AND status = ?
                    ),
                    failed_count = (
                        SELECT COUNT(*) FROM work_items WHERE job_id = ? AND status = ?
                    ),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    job_id,
                    ItemStatus.COMPLETED.value,
                    job_id,
                    ItemStatus.FAILED.value,
                    _now(),
                    job_id,
                ),
            )
        return True

    def delete_job(self, job_id: str) -> bool:
        with self.database.transaction() as conn:
            conn.execute("DELETE FROM work_items WHERE job_id = ?", (job_id,))
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted job %s", job_id)
        return deleted

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def create_items(self, job_id: str, payloads: Sequence[str]) -> List[WorkItem]:
        now = _now()
        rows = [
            {
                "id": str(uuid.uuid4()),
                "job_id": job_id,
                "position": position,
                "payload": payload,
                "status": ItemStatus.PENDING.value,
                "result": None,
                "error": None,
                "retry_count": 0,
                "generation": 0,
                "created_at": now,
                "updated_at": now,
            }
            for position, payload in enumerate(payloads)
        ]
        if rows:
            self.db["work_items"].insert_all(rows, batch_size=200)
        return [self._row_to_item(row) for row in rows]

    def update_item_status(
        self,
        item_id: str,
        status: ItemStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        # Error snippets are truncated like the queue's last_error
        error_snippet = error[:500] if error else None
        if retry_count is None:
            sql = (
                "UPDATE work_items SET status = ?, result = ?, error = ?, updated_at = ? "
                "WHERE id = ?"
            )
            params: tuple = (ItemStatus(status).value, result, error_snippet, _now(), item_id)
        else:
            sql = (
                "UPDATE work_items SET status = ?, result = ?, error = ?, retry_count = ?, "
                "updated_at = ? WHERE id = ?"
            )
            params = (ItemStatus(status).value, result, error_snippet, retry_count, _now(), item_id)

        with_lock_retry(lambda: self.database.conn.execute(sql, params))

    def claim_item(self, item_id: str, generation: int) -> None:
        with_lock_retry(
            lambda: self.database.conn.execute(
                "UPDATE work_items SET status = ?, generation = ?, updated_at = ? WHERE id = ?",
                (ItemStatus.PROCESSING.value, generation, _now(), item_id),
            )
        )

    def fail_stranded_items(
        self, item_ids: Iterable[str], generation: int, error: str
    ) -> List[str]:
        ids = list(item_ids)
        if not ids:
            return []

        def _fail() -> List[str]:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE work_items
                    SET status = ?, result = NULL, error = ?, updated_at = ?
                    WHERE id IN ({', '.join('?' for _ in ids)})
                      AND status = ? AND generation = ?
                    RETURNING id
                    """,
                    [ItemStatus.FAILED.value, error[:500], _now()]
                    + ids
                    + [ItemStatus.PROCESSING.value, generation],
                )
                return [row[0] for row in cursor.fetchall()]

        return with_lock_retry(_fail)

    def reset_items(
        self,
        job_id: str,
        statuses: Optional[Iterable[ItemStatus]] = None,
        item_ids: Optional[Iterable[str]] = None,
    ) -> int:
        clauses = ["job_id = ?"]
        params: List[Any] = [job_id]

        if statuses is not None:
            values = [ItemStatus(s).value for s in statuses]
            if not values:
                return 0
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        if item_ids is not None:
            ids = list(item_ids)
            if not ids:
                return 0
            clauses.append(f"id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)

        sql = (
            "UPDATE work_items SET status = ?, result = NULL, error = NULL, "
            "retry_count = 0, updated_at = ? WHERE " + " AND ".join(clauses)
        )
        cursor = with_lock_retry(
            lambda: self.database.conn.execute(
                sql, [ItemStatus.PENDING.value, _now()] + params
            )
        )
        return cursor.rowcount

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        rows = list(self.db["work_items"].rows_where("id = ?", [item_id]))
        return self._row_to_item(rows[0]) if rows else None

    def list_items(
        self, job_id: str, status: Optional[ItemStatus] = None
    ) -> List[WorkItem]:
        if status is None:
            rows = self.db["work_items"].rows_where(
                "job_id = ?", [job_id], order_by="position"
            )
        else:
            rows = self.db["work_items"].rows_where(
                "job_id = ? AND status = ?",
                [job_id, ItemStatus(status).value],
                order_by="position",
            )
        return [self._row_to_item(row) for row in rows]

    def list_items_paged(
        self, job_id: str, offset: int = 0, limit: int = 100
    ) -> List[WorkItem]:
        rows = self.db["work_items"].rows_where(
            "job_id = ?", [job_id], order_by="position", limit=limit, offset=offset
        )
        return [self._row_to_item(row) for row in rows]

    def get_progress(self, job_id: str) -> JobProgress:
        cursor = self.database.conn.execute(
            "SELECT status, COUNT(*) FROM work_items WHERE job_id = ? GROUP BY status",
            (job_id,),
        )
        counts = {status: count for status, count in cursor.fetchall()}
        return JobProgress(
            total=sum(counts.values()),
            processed=counts.get(ItemStatus.COMPLETED.value, 0),
            failed=counts.get(ItemStatus.FAILED.value, 0),
            pending=(
                counts.get(ItemStatus.PENDING.value, 0)
                + counts.get(ItemStatus.PROCESSING.value, 0)
            ),
        )

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        return Job(
            id=row["id"],
            status=JobStatus(row["status"]),
            total_items=row["total_items"],
            processed_count=row["processed_count"],
            failed_count=row["failed_count"],
            generation=row["generation"],
            file_name=row["file_name"],
            content_type=row["content_type"],
            artifact_path=row["artifact_path"],
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_item(row: Dict[str, Any]) -> WorkItem:
        return WorkItem(
            id=row["id"],
            job_id=row["job_id"],
            position=row["position"],
            payload=row["payload"],
            status=ItemStatus(row["status"]),
            result=row["result"],
            error=row["error"],
            retry_count=row["retry_count"],
            generation=row["generation"],
        )


class SQLiteChunkQueue(ChunkQueue):
    """SQLite-based chunk queue with atomic lease operations.

    Features:
    - Atomic dequeue via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Delayed entries promoted once available_at has passed
    - Removal refused for entries leased by another worker
    - Heartbeat and crash recovery via reset_stale_active()
    - Retention of finished entries via prune_finished()

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - Prevents race where multiple workers lease the same chunk
    - Exponential backoff handles transient lock contention
    """

    def __init__(self, database: Union[str, Path, SQLiteDatabase]):
        """Initialize queue backend.

        Args:
            database: Path to the SQLite file, or a shared SQLiteDatabase
        """
        self.database = _as_database(database)
        self.database.executescript(QUEUE_SCHEMA_SQL)

    @property
    def db(self) -> Database:
        return self.database.db

    def enqueue(
        self, chunk: ChunkPayload, priority: int = 1, delay_s: float = 0.0
    ) -> str:
        now = datetime.now()
        state = QueueState.DELAYED if delay_s > 0 else QueueState.PENDING
        available_at = now + timedelta(seconds=delay_s)

        def _insert() -> int:
            cursor = self.database.conn.execute(
                """
                INSERT INTO chunk_queue
                    (job_id, payload, state, priority, available_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk.job_id,
                    chunk.model_dump_json(),
                    state.value,
                    priority,
                    available_at.isoformat(timespec="microseconds"),
                    now.isoformat(timespec="microseconds"),
                ),
            )
            return cursor.lastrowid

        ref = str(with_lock_retry(_insert))
        logger.debug(
            "Enqueued chunk %s of job %s (%d items) as %s",
            chunk.sequence,
            chunk.job_id,
            len(chunk.items),
            ref,
        )
        return ref

    def dequeue(self, worker_id: str) -> Optional[QueueEntry]:
        """Atomically lease the next entry and mark it active.

        Args:
            worker_id: Unique identifier for the claiming worker

        Returns:
            QueueEntry if one is available, None if the queue is empty

        Atomicity: Uses BEGIN IMMEDIATE + UPDATE...RETURNING
        """
        now = _now()
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE chunk_queue
                SET state = ?,
                    worker_id = ?,
                    started_at = ?,
                    last_heartbeat = ?,
                    attempts = attempts + 1
                WHERE id = (
                    SELECT id FROM chunk_queue
                    WHERE state = ?
                       OR (state = ? AND available_at <= ?)
                    ORDER BY priority DESC, id ASC
                    LIMIT 1
                )
                RETURNING *
                """,
                (
                    QueueState.ACTIVE.value,
                    worker_id,
                    now,
                    now,
                    QueueState.PENDING.value,
                    QueueState.DELAYED.value,
                    now,
                ),
            )
            rows = _rows(cursor)

        if not rows:
            return None
        return self._row_to_entry(rows[0])

    def list_entries(
        self,
        states: Optional[Iterable[QueueState]] = None,
        job_id: Optional[str] = None,
    ) -> List[QueueEntry]:
        clauses = []
        params: List[Any] = []
        if states is not None:
            values = [QueueState(s).value for s in states]
            if not values:
                return []
            clauses.append(f"state IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)

        sql = "SELECT * FROM chunk_queue"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id ASC"
        cursor = self.database.conn.execute(sql, params)
        return [self._row_to_entry(row) for row in _rows(cursor)]

    def get_entry(self, ref: str) -> Optional[QueueEntry]:
        cursor = self.database.conn.execute(
            "SELECT * FROM chunk_queue WHERE id = ?", (int(ref),)
        )
        rows = _rows(cursor)
        return self._row_to_entry(rows[0]) if rows else None

    def remove(self, ref: str, worker_id: Optional[str] = None) -> bool:
        cursor = with_lock_retry(
            lambda: self.database.conn.execute(
                "DELETE FROM chunk_queue WHERE id = ? AND (state != ? OR worker_id = ?)",
                (int(ref), QueueState.ACTIVE.value, worker_id),
            )
        )
        return cursor.rowcount > 0

    def force_remove(self, ref: str) -> bool:
        cursor = with_lock_retry(
            lambda: self.database.conn.execute(
                "DELETE FROM chunk_queue WHERE id = ?", (int(ref),)
            )
        )
        return cursor.rowcount > 0

    def mutate_in_place(
        self, ref: str, fn: Callable[[ChunkPayload], ChunkPayload]
    ) -> bool:
        with self.database.transaction() as conn:
            row = conn.execute(
                "SELECT payload FROM chunk_queue WHERE id = ?", (int(ref),)
            ).fetchone()
            if row is None:
                return False
            try:
                chunk = parse_chunk(row[0])
            except MalformedChunkError:
                return False
            updated = fn(chunk)
            conn.execute(
                "UPDATE chunk_queue SET payload = ? WHERE id = ?",
                (updated.model_dump_json(), int(ref)),
            )
        return True

    def is_cancel_requested(self, ref: str) -> bool:
        row = self.database.conn.execute(
            "SELECT payload FROM chunk_queue WHERE id = ?", (int(ref),)
        ).fetchone()
        if row is None:
            return True
        try:
            return parse_chunk(row[0]).cancel_requested
        except MalformedChunkError:
            return True

    def complete(self, ref: str) -> None:
        self._finish(ref, QueueState.COMPLETED, None)

    def fail(self, ref: str, error: str) -> None:
        self._finish(ref, QueueState.FAILED, error[:500] if error else None)

    def _finish(self, ref: str, state: QueueState, error: Optional[str]) -> None:
        with_lock_retry(
            lambda: self.database.conn.execute(
                "UPDATE chunk_queue SET state = ?, finished_at = ?, last_error = ? WHERE id = ?",
                (state.value, _now(), error, int(ref)),
            )
        )

    def release(self, ref: str, worker_id: str) -> bool:
        cursor = with_lock_retry(
            lambda: self.database.conn.execute(
                "UPDATE chunk_queue SET state = ?, worker_id = NULL "
                "WHERE id = ? AND state = ? AND worker_id = ?",
                (QueueState.PENDING.value, int(ref), QueueState.ACTIVE.value, worker_id),
            )
        )
        return cursor.rowcount > 0

    def heartbeat(self, ref: str) -> None:
        """Refresh the lease of an active entry."""
        with_lock_retry(
            lambda: self.database.conn.execute(
                "UPDATE chunk_queue SET last_heartbeat = ? WHERE id = ? AND state = ?",
                (_now(), int(ref), QueueState.ACTIVE.value),
            )
        )

    def reset_stale_active(self, timeout_s: float = 600) -> int:
        """Crash recovery: return leases with no recent heartbeat to 'pending'.

        Args:
            timeout_s: Consider a lease abandoned after this many seconds
                       without a heartbeat

        Returns:
            Count of reset entries
        """
        cutoff = (datetime.now() - timedelta(seconds=timeout_s)).isoformat(
            timespec="microseconds"
        )
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE chunk_queue
                SET state = ?, worker_id = NULL
                WHERE state = ?
                  AND COALESCE(last_heartbeat, started_at, created_at) < ?
                RETURNING id
                """,
                (QueueState.PENDING.value, QueueState.ACTIVE.value, cutoff),
            )
            rows = cursor.fetchall()

        for (ref,) in rows:
            logger.warning("Reset stale chunk lease %s (crash recovery)", ref)
        return len(rows)

    def prune_finished(self, keep_completed: int = 10, keep_failed: int = 50) -> int:
        """Delete finished entries beyond the newest ``keep_*`` of each state."""
        removed = 0
        with self.database.transaction() as conn:
            for state, keep in (
                (QueueState.COMPLETED, keep_completed),
                (QueueState.FAILED, keep_failed),
            ):
                cursor = conn.execute(
                    """
                    DELETE FROM chunk_queue
                    WHERE state = ?
                      AND id NOT IN (
                          SELECT id FROM chunk_queue WHERE state = ?
                          ORDER BY id DESC LIMIT ?
                      )
                    """,
                    (state.value, state.value, keep),
                )
                removed += cursor.rowcount
        return removed

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in QueueState}
        cursor = self.database.conn.execute(
            "SELECT state, COUNT(*) FROM chunk_queue GROUP BY state"
        )
        for state, count in cursor.fetchall():
            counts[state] = count
        return counts

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> QueueEntry:
        chunk = None
        parse_error = None
        try:
            chunk = parse_chunk(row["payload"])
        except MalformedChunkError as e:
            parse_error = str(e)

        return QueueEntry(
            id=str(row["id"]),
            job_id=row["job_id"],
            state=QueueState(row["state"]),
            priority=row["priority"],
            worker_id=row["worker_id"],
            attempts=row["attempts"],
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            last_heartbeat=_parse_ts(row["last_heartbeat"]),
            last_error=row["last_error"],
            raw=row["payload"],
            chunk=chunk,
            parse_error=parse_error,
        )
