"""
Manages the SQLite database that records one upload task per torrent hash.
"""

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from qb_cloud_sync.exceptions import StoreError, TaskNotFoundError
from qb_cloud_sync.models.task import Task, TaskStatus, utcnow

log = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

# Columns a caller may change through update_task()
UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "upload_attempts",
        "verification_attempts",
        "error_message",
        "remote_path",
        "last_attempt_at",
        "upload_duration_ms",
    }
)
ATTEMPT_COLUMNS = frozenset({"upload_attempts", "verification_attempts"})

_SKIPPABLE = tuple(s.value for s in TaskStatus if not s.is_terminal)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _to_db_value(value: Any) -> Any:
    if isinstance(value, TaskStatus):
        return value.value
    if isinstance(value, datetime):
        return _to_db(value)
    return value


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        hash=row["hash"],
        name=row["name"],
        local_path=row["local_path"],
        save_path=row["save_path"],
        remote_path=row["remote_path"],
        added_at=_from_db(row["added_at"]),
        completed_at=_from_db(row["completed_at"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
        status=TaskStatus(row["status"]),
        upload_attempts=row["upload_attempts"],
        verification_attempts=row["verification_attempts"],
        last_attempt_at=_from_db(row["last_attempt_at"]),
        error_message=row["error_message"],
        upload_size=row["upload_size"],
        upload_duration_ms=row["upload_duration_ms"],
    )


class TaskStore:
    """
    An asyncio-friendly SQLite store for upload tasks.

    Each operation opens a short-lived connection and runs in a worker thread,
    bounded by a small semaphore. Writes to one row are atomic single
    statements, so a read-modify-write never races another writer.
    """

    def __init__(self, db_path: Path, pool_size: int = 5):
        self.db_path = Path(db_path)
        self._connection_semaphore = asyncio.Semaphore(pool_size)
        self._closed = False
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with optimized PRAGMA settings."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            return conn
        except sqlite3.Error as e:
            raise StoreError(f"Failed to connect to task database '{self.db_path}': {e}") from e

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Yields a connection inside a transaction and always closes it."""
        conn = self._get_connection()
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Task database operation failed: {e}") from e
        finally:
            conn.close()

    def _initialize_db(self) -> None:
        """Creates the database file, table and indexes if they don't exist."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create database directory: {e}") from e

        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS torrent_tasks (
                    hash TEXT PRIMARY KEY NOT NULL,
                    name TEXT NOT NULL,
                    local_path TEXT NOT NULL,
                    save_path TEXT NOT NULL DEFAULT '',
                    remote_path TEXT,
                    added_at TEXT NOT NULL,
                    completed_at TEXT,
                    status TEXT NOT NULL DEFAULT 'PENDING_UPLOAD',
                    upload_attempts INTEGER NOT NULL DEFAULT 0,
                    verification_attempts INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at TEXT,
                    error_message TEXT,
                    upload_size INTEGER NOT NULL DEFAULT 0,
                    upload_duration_ms INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_torrent_tasks_status ON"
                " torrent_tasks(status, created_at);"
            )

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function within the connection pool semaphore."""
        if self._closed:
            raise StoreError("Task store is closed.")
        async with self._connection_semaphore:
            return await asyncio.to_thread(func, *args)

    # --- reads ---

    def _get_task_sync(self, task_hash: str) -> Optional[Task]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM torrent_tasks WHERE hash = ?", (task_hash,)
            ).fetchone()
        return _row_to_task(row) if row else None

    async def get_task(self, task_hash: str) -> Optional[Task]:
        """Fetches a single task by hash."""
        return await self._run_in_executor(self._get_task_sync, task_hash)

    def _existing_hashes_sync(self, hashes: list[str]) -> set[str]:
        """Synchronous implementation for checking a batch of hashes in chunks."""
        if not hashes:
            return set()

        BATCH_SIZE = 999  # SQLite's default limit on variables prior to 3.32.0
        existing: set[str] = set()
        with self._connection() as conn:
            for i in range(0, len(hashes), BATCH_SIZE):
                chunk = hashes[i : i + BATCH_SIZE]
                placeholders = ",".join("?" * len(chunk))
                query = (
                    "SELECT hash FROM torrent_tasks WHERE hash IN"  # noqa: S608
                    f" ({placeholders})"
                )
                existing.update(row[0] for row in conn.execute(query, chunk))
        return existing

    async def get_existing_hashes(self, hashes: Iterable[str]) -> set[str]:
        """Returns the subset of the given hashes that already have a task."""
        return await self._run_in_executor(self._existing_hashes_sync, list(hashes))

    def _find_actionable_sync(
        self, max_upload_attempts: int, max_verification_attempts: int, limit: int
    ) -> list[Task]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM torrent_tasks
                WHERE status = ?
                   OR (status = ? AND upload_attempts < ?)
                   OR status = ?
                   OR (status = ? AND verification_attempts < ?)
                ORDER BY status ASC, created_at ASC, rowid ASC
                LIMIT ?
                """,
                (
                    TaskStatus.PENDING_UPLOAD.value,
                    TaskStatus.UPLOAD_FAILED.value,
                    max_upload_attempts,
                    TaskStatus.PENDING_VERIFICATION.value,
                    TaskStatus.VERIFICATION_FAILED.value,
                    max_verification_attempts,
                    limit,
                ),
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    async def find_actionable_tasks(
        self, max_upload_attempts: int, max_verification_attempts: int, limit: int
    ) -> list[Task]:
        """
        Selects tasks that can make progress this cycle.

        Pending tasks always qualify; failed tasks qualify while their attempt
        counter for that stage is below its ceiling. Ordered by status, then
        creation order.
        """
        return await self._run_in_executor(
            self._find_actionable_sync,
            max_upload_attempts,
            max_verification_attempts,
            limit,
        )

    def _list_tasks_sync(
        self, statuses: Optional[list[str]], limit: Optional[int]
    ) -> list[Task]:
        query = "SELECT * FROM torrent_tasks"
        params: list[Any] = []
        if statuses:
            query += f" WHERE status IN ({','.join('?' * len(statuses))})"  # noqa: S608
            params.extend(statuses)
        query += " ORDER BY updated_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_task(row) for row in rows]

    async def list_tasks(
        self,
        statuses: Optional[Iterable[TaskStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        """Lists tasks, most recently updated first."""
        status_values = [s.value for s in statuses] if statuses else None
        return await self._run_in_executor(self._list_tasks_sync, status_values, limit)

    def _count_by_status_sync(self) -> dict[TaskStatus, int]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) FROM torrent_tasks GROUP BY status"
            ).fetchall()
        return {TaskStatus(status): count for status, count in rows}

    async def count_by_status(self) -> dict[TaskStatus, int]:
        """Returns the number of tasks in each status."""
        return await self._run_in_executor(self._count_by_status_sync)

    # --- writes ---

    def _insert_task_sync(self, task: Task) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO torrent_tasks (
                    hash, name, local_path, save_path, remote_path, added_at,
                    completed_at, status, upload_attempts, verification_attempts,
                    last_attempt_at, error_message, upload_size, upload_duration_ms,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.hash,
                    task.name,
                    task.local_path,
                    task.save_path,
                    task.remote_path,
                    _to_db(task.added_at),
                    _to_db(task.completed_at),
                    task.status.value,
                    task.upload_attempts,
                    task.verification_attempts,
                    _to_db(task.last_attempt_at),
                    task.error_message,
                    task.upload_size,
                    task.upload_duration_ms,
                    _to_db(task.created_at),
                    _to_db(task.updated_at),
                ),
            )
            return cursor.rowcount == 1

    async def insert_task(self, task: Task) -> bool:
        """
        Inserts a task unless one with the same hash already exists.

        Returns:
            True if a new row was created, False if the hash was already known.
        """
        return await self._run_in_executor(self._insert_task_sync, task)

    def _update_task_sync(
        self, task_hash: str, changes: dict[str, Any], increment: Optional[str]
    ) -> Task:
        assignments = [f"{column} = ?" for column in changes]
        params = [_to_db_value(value) for value in changes.values()]
        if increment:
            assignments.append(f"{increment} = {increment} + 1")
        assignments.append("updated_at = MAX(updated_at, ?)")
        params.append(_to_db(utcnow()))
        params.append(task_hash)

        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE torrent_tasks SET {', '.join(assignments)} WHERE hash = ?",  # noqa: S608
                params,
            )
            if cursor.rowcount == 0:
                raise TaskNotFoundError(f"No task stored for hash {task_hash}.")
            row = conn.execute(
                "SELECT * FROM torrent_tasks WHERE hash = ?", (task_hash,)
            ).fetchone()
        return _row_to_task(row)

    async def update_task(
        self, task_hash: str, increment: Optional[str] = None, **changes: Any
    ) -> Task:
        """
        Atomically updates fields of one task and returns the stored result.

        Args:
            task_hash: Primary key of the task.
            increment: Optional attempt column to increase by one in the same
                statement.
            **changes: Column values to set.
        """
        unknown = set(changes) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        if increment is not None and increment not in ATTEMPT_COLUMNS:
            raise ValueError(f"Cannot increment column: {increment}")
        return await self._run_in_executor(
            self._update_task_sync, task_hash, changes, increment
        )

    async def begin_attempt(
        self, task_hash: str, status: TaskStatus, attempt_column: str
    ) -> Task:
        """Counts a new attempt and moves the task into its in-progress status."""
        return await self.update_task(
            task_hash,
            increment=attempt_column,
            status=status,
            last_attempt_at=utcnow(),
        )

    async def reset_attempts(self, task_hash: str) -> Task:
        """Zeroes the attempt counter of a failed task so it is retried again."""
        task = await self.get_task(task_hash)
        if task is None:
            raise TaskNotFoundError(f"No task stored for hash {task_hash}.")
        if task.status == TaskStatus.UPLOAD_FAILED:
            return await self.update_task(task_hash, upload_attempts=0)
        if task.status == TaskStatus.VERIFICATION_FAILED:
            return await self.update_task(task_hash, verification_attempts=0)
        raise ValueError(
            f"Task {task_hash} is {task.status.value}; only failed tasks can be retried."
        )

    def _mark_skipped_sync(self, task_hash: str, reason: str) -> Task:
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE torrent_tasks
                SET status = ?, error_message = ?, updated_at = MAX(updated_at, ?)
                WHERE hash = ? AND status IN ({",".join("?" * len(_SKIPPABLE))})
                """,  # noqa: S608
                (TaskStatus.SKIPPED.value, reason, _to_db(utcnow()), task_hash, *_SKIPPABLE),
            )
            row = conn.execute(
                "SELECT * FROM torrent_tasks WHERE hash = ?", (task_hash,)
            ).fetchone()
        if row is None:
            raise TaskNotFoundError(f"No task stored for hash {task_hash}.")
        if cursor.rowcount == 0:
            raise ValueError(f"Task {task_hash} is {row['status']} and cannot be skipped.")
        return _row_to_task(row)

    async def mark_skipped(self, task_hash: str, reason: str = "Skipped by operator") -> Task:
        """Moves a task that has not finished into the terminal SKIPPED state."""
        return await self._run_in_executor(self._mark_skipped_sync, task_hash, reason)

    def _recover_interrupted_sync(self, message: str) -> int:
        recovered = 0
        with self._connection() as conn:
            for in_progress, failed in (
                (TaskStatus.UPLOADING, TaskStatus.UPLOAD_FAILED),
                (TaskStatus.VERIFYING, TaskStatus.VERIFICATION_FAILED),
            ):
                cursor = conn.execute(
                    """
                    UPDATE torrent_tasks
                    SET status = ?, error_message = ?, updated_at = MAX(updated_at, ?)
                    WHERE status = ?
                    """,
                    (failed.value, message, _to_db(utcnow()), in_progress.value),
                )
                recovered += cursor.rowcount
        return recovered

    async def recover_interrupted(
        self, message: str = "Interrupted before the attempt finished."
    ) -> int:
        """
        Moves tasks left in UPLOADING or VERIFYING by a previous run to the
        failed status of their stage, where they are retried within the
        usual attempt ceiling. Callers must hold the database's ProcessorLock,
        otherwise a live attempt of another process would be recovered too.

        Returns:
            The number of tasks recovered.
        """
        return await self._run_in_executor(self._recover_interrupted_sync, message)

    def _checkpoint_sync(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")

    async def close(self) -> None:
        """Flushes the write-ahead log and refuses further operations."""
        if self._closed:
            return
        try:
            await self._run_in_executor(self._checkpoint_sync)
        except StoreError as e:
            log.warning(f"Could not checkpoint task database on close: {e}")
        self._closed = True
        log.debug("Task store closed.")
