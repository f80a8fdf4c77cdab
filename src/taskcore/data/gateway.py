# data/gateway.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from ..errors import PersistenceError, ValidationError
from .models import NotificationBatch, Task, TaskFile, TaskStatus, User

logger = logging.getLogger(__name__)


class TaskCoreDB:
    """
    SQLite persistence gateway for Users, Tasks, TaskFiles and notification batches.

    Typed reads/writes only; validation and stamping of timestamps belong to callers.

    The schema is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection

    Every sqlite3.Error is re-raised as PersistenceError.
    """

    def __init__(self, db_path: str | Path = "taskcore.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except PersistenceError:
            total = -1
        logger.info("TaskCoreDB ready db=%s tasks=%s", self._db_path, total)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        # Needed on every connection: task_files rows cascade with their task.
        conn.execute("PRAGMA foreign_keys=ON")
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self._db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error("SQLite error db=%s: %r", self._db_path, e)
            raise PersistenceError(f"Storage failure: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    email         TEXT NOT NULL UNIQUE,
                    login         TEXT NOT NULL,
                    password_hash TEXT NOT NULL DEFAULT '',
                    salt          TEXT NOT NULL DEFAULT '',
                    created_at    INTEGER NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                    title               TEXT NOT NULL,
                    description         TEXT NOT NULL DEFAULT '',
                    assignee            TEXT NOT NULL DEFAULT '',
                    due_at              INTEGER NOT NULL,
                    status              TEXT NOT NULL DEFAULT 'OPEN',
                    created_at          INTEGER NOT NULL,
                    updated_at          INTEGER NOT NULL,
                    overdue_notified_at INTEGER,
                    version             INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_files (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id    INTEGER NOT NULL
                               REFERENCES tasks(id) ON DELETE CASCADE ON UPDATE CASCADE,
                    file_name  TEXT NOT NULL,
                    file_path  TEXT NOT NULL,
                    mime_type  TEXT NOT NULL DEFAULT 'application/octet-stream',
                    created_at INTEGER NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS notification_batches (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_ids     TEXT NOT NULL DEFAULT '[]',
                    title        TEXT NOT NULL,
                    body         TEXT NOT NULL,
                    staged_at    INTEGER NOT NULL,
                    delivered_at INTEGER,
                    committed_at INTEGER
                )
                """
            )

            # Migrations (safe): databases created before the sweep existed.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskCoreDB migration: added column tasks.%s", name)

            add_col("overdue_notified_at", "INTEGER")
            add_col("version", "INTEGER NOT NULL DEFAULT 1")

            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_overdue "
                "ON tasks(overdue_notified_at, status, due_at)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks(assignee)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_task_files_task ON task_files(task_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_users_login ON users(login)")

            conn.commit()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            assignee=str(row["assignee"] or ""),
            due_at=int(row["due_at"]),
            status=TaskStatus.from_db(row["status"]),
            created_at=int(row["created_at"] or 0),
            updated_at=int(row["updated_at"] or 0),
            overdue_notified_at=(
                int(row["overdue_notified_at"]) if row["overdue_notified_at"] is not None else None
            ),
            version=int(row["version"] or 1),
        )

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> TaskFile:
        return TaskFile(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            file_name=str(row["file_name"]),
            file_path=str(row["file_path"]),
            mime_type=str(row["mime_type"] or "application/octet-stream"),
            created_at=int(row["created_at"] or 0),
        )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            email=str(row["email"]),
            login=str(row["login"]),
            password_hash=str(row["password_hash"] or ""),
            salt=str(row["salt"] or ""),
            created_at=int(row["created_at"] or 0),
        )

    @staticmethod
    def _row_to_batch(row: sqlite3.Row) -> NotificationBatch:
        try:
            raw_ids = json.loads(row["task_ids"] or "[]")
        except ValueError:
            logger.warning("Corrupt task_ids in notification batch id=%s", row["id"])
            raw_ids = []
        return NotificationBatch(
            id=int(row["id"]),
            task_ids=tuple(int(x) for x in raw_ids),
            title=str(row["title"]),
            body=str(row["body"]),
            staged_at=int(row["staged_at"]),
            delivered_at=int(row["delivered_at"]) if row["delivered_at"] is not None else None,
            committed_at=int(row["committed_at"]) if row["committed_at"] is not None else None,
        )

    @staticmethod
    def _clean_ids(ids: Iterable[int]) -> list[int]:
        return sorted({int(x) for x in ids})

    @staticmethod
    def _lastrowid(cur: sqlite3.Cursor, table: str) -> int:
        rowid = cur.lastrowid
        if rowid is None:
            raise PersistenceError(f"SQLite did not return lastrowid for {table} insert")
        return int(rowid)

    # ---- users ----

    def add_user(
        self,
        *,
        email: str,
        login: str,
        password_hash: str = "",
        salt: str = "",
        created_at: int,
    ) -> int:
        try:
            with self._connect() as conn:
                cur = conn.cursor()
                cur.execute(
                    """
                    INSERT INTO users(email, login, password_hash, salt, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (email.strip(), login.strip(), password_hash, salt, int(created_at)),
                )
                conn.commit()
                user_id = self._lastrowid(cur, "users")
        except PersistenceError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise ValidationError({"email": "A user with this email already exists"}) from e
            raise
        logger.debug("User added id=%s login=%s", user_id, login)
        return user_id

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ? LIMIT 1", (int(user_id),)).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_login(self, login: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE login = ? ORDER BY id ASC LIMIT 1", (login,)
            ).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ? LIMIT 1", (email,)).fetchone()
            return self._row_to_user(row) if row else None

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at DESC, id DESC").fetchall()
            return [self._row_to_user(r) for r in rows]

    def delete_user(self, user_id: int) -> bool:
        # Task.assignee is a soft reference: no cascade, dangling logins are tolerated.
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = ?", (int(user_id),))
            conn.commit()
            return cur.rowcount > 0

    def count_users(self) -> int:
        with self._connect() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM users").fetchone()
            return int(n)

    # ---- tasks ----

    def count_tasks(self) -> int:
        with self._connect() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def insert_task(
        self,
        *,
        title: str,
        description: str,
        assignee: str,
        due_at: int,
        status: TaskStatus,
        created_at: int,
        updated_at: int,
    ) -> int:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO tasks(
                    title, description, assignee, due_at, status,
                    created_at, updated_at, overdue_notified_at, version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, 1)
                """,
                (
                    title,
                    description,
                    assignee,
                    int(due_at),
                    status.value,
                    int(created_at),
                    int(updated_at),
                ),
            )
            conn.commit()
            task_id = self._lastrowid(cur, "tasks")
        logger.debug("Task inserted id=%s status=%s due_at=%s", task_id, status.value, due_at)
        return task_id

    def get_task(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ? LIMIT 1", (int(task_id),)).fetchone()
            return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        assignee: str | None = None,
    ) -> list[Task]:
        sql = "SELECT * FROM tasks WHERE 1=1"
        params: list[Any] = []

        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)

        if assignee is not None:
            sql += " AND assignee = ?"
            params.append(assignee)
            sql += " ORDER BY due_at ASC, id ASC"
        else:
            sql += " ORDER BY created_at DESC, id DESC"

        with self._connect() as conn:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]

    def update_task(self, task: Task, *, expected_version: int) -> int:
        """
        Write every mutable column of `task` if the stored version is still
        `expected_version`. Returns the number of rows written (0 or 1).
        """
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tasks
                SET title = ?,
                    description = ?,
                    assignee = ?,
                    due_at = ?,
                    status = ?,
                    updated_at = ?,
                    overdue_notified_at = ?,
                    version = version + 1
                WHERE id = ?
                  AND version = ?
                """,
                (
                    task.title,
                    task.description,
                    task.assignee,
                    int(task.due_at),
                    task.status.value,
                    int(task.updated_at),
                    task.overdue_notified_at,
                    int(task.id),
                    int(expected_version),
                ),
            )
            conn.commit()
            return int(cur.rowcount)

    def delete_task(self, task_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (int(task_id),))
            conn.commit()
            deleted = cur.rowcount > 0
        logger.debug("Task delete id=%s deleted=%s", task_id, deleted)
        return deleted

    def find_overdue_unnotified(self, *, as_of: int) -> list[Task]:
        """
        Tasks with due_at < as_of, status != DONE and no overdue mark yet,
        soonest-overdue first (ties in insertion order).
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE due_at < ?
                  AND status != ?
                  AND overdue_notified_at IS NULL
                ORDER BY due_at ASC, id ASC
                """,
                (int(as_of), TaskStatus.DONE.value),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    @staticmethod
    def _mark_overdue(conn: sqlite3.Connection, ids: list[int], at: int) -> int:
        # Re-marking keeps the first stamp and version; the row still counts as affected.
        placeholders = ",".join("?" for _ in ids)
        cur = conn.execute(
            f"""
            UPDATE tasks
            SET version = CASE WHEN overdue_notified_at IS NULL THEN version + 1 ELSE version END,
                overdue_notified_at = COALESCE(overdue_notified_at, ?)
            WHERE id IN ({placeholders})
            """,
            (int(at), *ids),
        )
        return int(cur.rowcount)

    def mark_overdue_notified(self, ids: Iterable[int], *, at: int) -> int:
        clean = self._clean_ids(ids)
        if not clean:
            return 0
        with self._connect() as conn:
            n = self._mark_overdue(conn, clean, at)
            conn.commit()
        logger.debug("Marked overdue-notified ids=%s at=%s affected=%s", clean, at, n)
        return n

    # ---- task files ----

    def insert_file(
        self,
        *,
        task_id: int,
        file_name: str,
        file_path: str,
        mime_type: str,
        created_at: int,
    ) -> int:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO task_files(task_id, file_name, file_path, mime_type, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (int(task_id), file_name, file_path, mime_type, int(created_at)),
            )
            conn.commit()
            return self._lastrowid(cur, "task_files")

    def get_file(self, file_id: int) -> TaskFile | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task_files WHERE id = ? LIMIT 1", (int(file_id),)
            ).fetchone()
            return self._row_to_file(row) if row else None

    def list_files(self, task_id: int) -> list[TaskFile]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task_files WHERE task_id = ? ORDER BY created_at DESC, id DESC",
                (int(task_id),),
            ).fetchall()
            return [self._row_to_file(r) for r in rows]

    def delete_file(self, file_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM task_files WHERE id = ?", (int(file_id),))
            conn.commit()
            return cur.rowcount > 0

    def delete_files_for_task(self, task_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM task_files WHERE task_id = ?", (int(task_id),))
            conn.commit()
            return int(cur.rowcount)

    def list_file_paths(self) -> set[str]:
        with self._connect() as conn:
            return {str(r["file_path"]) for r in conn.execute("SELECT file_path FROM task_files")}

    # ---- notification batches ----

    def stage_batch(self, *, task_ids: Iterable[int], title: str, body: str, staged_at: int) -> int:
        ids = self._clean_ids(task_ids)
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO notification_batches(task_ids, title, body, staged_at)
                VALUES (?, ?, ?, ?)
                """,
                (json.dumps(ids), title, body, int(staged_at)),
            )
            conn.commit()
            return self._lastrowid(cur, "notification_batches")

    def mark_batch_delivered(self, batch_id: int, *, at: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE notification_batches SET delivered_at = ? WHERE id = ?",
                (int(at), int(batch_id)),
            )
            conn.commit()

    def commit_batch(self, batch_id: int, *, task_ids: Iterable[int], at: int) -> int:
        """Mark the batch's tasks notified and close the batch in one transaction."""
        ids = self._clean_ids(task_ids)
        with self._connect() as conn:
            n = self._mark_overdue(conn, ids, at) if ids else 0
            conn.execute(
                "UPDATE notification_batches SET committed_at = ? WHERE id = ?",
                (int(at), int(batch_id)),
            )
            conn.commit()
        logger.debug("Notification batch %s committed (affected=%s)", batch_id, n)
        return n

    def discard_batch(self, batch_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM notification_batches WHERE id = ?", (int(batch_id),))
            conn.commit()

    def get_batch(self, batch_id: int) -> NotificationBatch | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification_batches WHERE id = ? LIMIT 1", (int(batch_id),)
            ).fetchone()
            return self._row_to_batch(row) if row else None

    def list_open_batches(self) -> list[NotificationBatch]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notification_batches WHERE committed_at IS NULL ORDER BY id ASC"
            ).fetchall()
            return [self._row_to_batch(r) for r in rows]
