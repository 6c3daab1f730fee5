# src/task_lifecycle/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..core.errors import DuplicateOccurrence, StoreUnavailable, ValidationError
from ..core.ports import TaskListener, Unsubscribe
from .recurrence import EndCondition, EndType, Frequency, RecurrenceRule
from .task_models import (
    Assignment,
    RejectionRecord,
    SeriesRecord,
    Task,
    TaskCategory,
    TaskPriority,
    TaskStatus,
    as_utc,
    normalize_tags,
)

logger = logging.getLogger(__name__)

_PATCHABLE = frozenset(
    {"status", "assignment", "title", "description", "priority", "category", "tags", "due_date"}
)


def _ts(value: datetime | None) -> float | None:
    return as_utc(value).timestamp() if value is not None else None


def _dt(raw: Any) -> datetime | None:
    if raw is None:
        return None
    return datetime.fromtimestamp(float(raw), UTC)


class TaskStore:
    """
    SQLite task store (tasks, rejection ledger, recurring series).

    The schema is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Concurrency:
    - each method opens its own SQLite connection
    - task writes are conditioned on the version token (optimistic concurrency)
    - (series_id, occurrence_index) is unique, so duplicate occurrence creates fail
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3", *, timeout: float = 5.0) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = float(timeout)
        self._listeners: dict[tuple[str, str], list[TaskListener]] = {}
        self._listeners_lock = threading.Lock()
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except StoreUnavailable:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Drop all change listeners on shutdown (connections are opened per call)."""
        with self._listeners_lock:
            self._listeners.clear()

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Short-lived connection; locked/unreachable database -> StoreUnavailable."""
        try:
            conn = self._get_conn()
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"Task store unavailable: {e}") from e
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"Task store unavailable: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._session() as conn:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'assigned',
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    category TEXT NOT NULL DEFAULT 'other',
                    tags TEXT NOT NULL DEFAULT '[]',
                    group_id TEXT,
                    creator_id TEXT NOT NULL,
                    due_date REAL,
                    assignee_id TEXT NOT NULL,
                    assignee_name TEXT,
                    reviewer_id TEXT,
                    reviewer_name TEXT,
                    assigned_at REAL NOT NULL,
                    last_status_change_at REAL NOT NULL,
                    series_id TEXT,
                    occurrence_index INTEGER,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("version", "INTEGER NOT NULL DEFAULT 0")
            add_col("category", "TEXT NOT NULL DEFAULT 'other'")
            add_col("tags", "TEXT NOT NULL DEFAULT '[]'")
            add_col("reviewer_id", "TEXT")
            add_col("reviewer_name", "TEXT")
            add_col("series_id", "TEXT")
            add_col("occurrence_index", "INTEGER")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_group ON tasks(group_id, due_date)")
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_series_occurrence "
                "ON tasks(series_id, occurrence_index)"
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS rejections (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL,
                    reviewer_id TEXT NOT NULL,
                    reviewer_name TEXT,
                    reason TEXT NOT NULL,
                    timestamp REAL NOT NULL
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_rejections_task ON rejections(task_id, timestamp)")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS series (
                    series_id TEXT PRIMARY KEY,
                    frequency TEXT NOT NULL,
                    interval INTEGER NOT NULL DEFAULT 1,
                    days_of_week TEXT NOT NULL DEFAULT '[]',
                    end_type TEXT NOT NULL DEFAULT 'never',
                    end_count INTEGER,
                    end_until REAL,
                    anchor_due_date REAL NOT NULL,
                    created_by TEXT NOT NULL,
                    group_id TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL
                )
                """
            )

            conn.commit()

    @staticmethod
    def _tags_to_str(tags: frozenset[str]) -> str:
        return json.dumps(sorted(tags), ensure_ascii=False)

    @staticmethod
    def _str_to_tags(s: str | None) -> frozenset[str]:
        if not s:
            return frozenset()
        try:
            val = json.loads(s)
        except ValueError:
            logger.warning("Malformed tags column %r; reading as empty.", s)
            return frozenset()
        return normalize_tags(val) if isinstance(val, list) else frozenset()

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=str(row["id"]),
            version=int(row["version"] or 0),
            status=TaskStatus.from_db(row["status"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            priority=TaskPriority(row["priority"] or "medium"),
            category=TaskCategory(row["category"] or "other"),
            tags=self._str_to_tags(row["tags"]),
            group_id=row["group_id"],
            creator_id=str(row["creator_id"]),
            due_date=_dt(row["due_date"]),
            assignment=Assignment(
                assignee_id=str(row["assignee_id"]),
                assignee_name=row["assignee_name"],
                reviewer_id=row["reviewer_id"],
                reviewer_name=row["reviewer_name"],
                assigned_at=_dt(row["assigned_at"]),
                last_status_change_at=_dt(row["last_status_change_at"]),
            ),
            series_id=row["series_id"],
            occurrence_index=int(row["occurrence_index"]) if row["occurrence_index"] is not None else None,
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_rejection(row: sqlite3.Row) -> RejectionRecord:
        return RejectionRecord(
            id=str(row["id"]),
            task_id=str(row["task_id"]),
            reviewer_id=str(row["reviewer_id"]),
            reviewer_name=row["reviewer_name"],
            reason=str(row["reason"]),
            timestamp=_dt(row["timestamp"]),
        )

    @staticmethod
    def _row_to_series(row: sqlite3.Row) -> SeriesRecord:
        end_type = EndType(row["end_type"] or "never")
        if end_type == EndType.AFTER_COUNT:
            end = EndCondition.after_count(int(row["end_count"]))
        elif end_type == EndType.UNTIL_DATE:
            end = EndCondition.until_date(_dt(row["end_until"]))
        else:
            end = EndCondition.never()
        rule = RecurrenceRule(
            frequency=Frequency(row["frequency"]),
            anchor_due_date=_dt(row["anchor_due_date"]),
            interval=int(row["interval"] or 1),
            days_of_week=frozenset(json.loads(row["days_of_week"] or "[]")),
            end=end,
        )
        return SeriesRecord(
            series_id=str(row["series_id"]),
            rule=rule,
            created_by=str(row["created_by"]),
            created_at=_dt(row["created_at"]),
            group_id=row["group_id"],
            active=bool(row["active"]),
        )

    # ---- public API: tasks ----

    def count_tasks(self) -> int:
        with self._session() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def get(self, task_id: str) -> Task | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return self._row_to_task(row) if row else None

    def get_occurrence(self, series_id: str, occurrence_index: int) -> Task | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE series_id = ? AND occurrence_index = ?",
                (series_id, int(occurrence_index)),
            ).fetchone()
            return self._row_to_task(row) if row else None

    def create(self, task: Task) -> Task:
        a = task.assignment
        with self._session() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO tasks(
                        id, version, status, title, description, priority, category, tags,
                        group_id, creator_id, due_date,
                        assignee_id, assignee_name, reviewer_id, reviewer_name,
                        assigned_at, last_status_change_at,
                        series_id, occurrence_index, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task.id,
                        int(task.version),
                        task.status.value,
                        task.title,
                        task.description,
                        task.priority.value,
                        task.category.value,
                        self._tags_to_str(task.tags),
                        task.group_id,
                        task.creator_id,
                        _ts(task.due_date),
                        a.assignee_id,
                        a.assignee_name,
                        a.reviewer_id,
                        a.reviewer_name,
                        _ts(a.assigned_at),
                        _ts(a.last_status_change_at),
                        task.series_id,
                        task.occurrence_index,
                        _ts(task.created_at),
                        _ts(task.updated_at),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                if task.series_id is not None and task.occurrence_index is not None:
                    raise DuplicateOccurrence(task.series_id, task.occurrence_index) from None
                raise ValidationError("Task id already exists", task_id=task.id, action="create") from None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task.id,)).fetchone()
            created = self._row_to_task(row)

        logger.debug(
            "Task inserted id=%s status=%s series=%s index=%s",
            created.id,
            created.status.value,
            created.series_id,
            created.occurrence_index,
        )
        self._notify(created)
        return created

    def update_if_version(
        self,
        task_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
    ) -> Task | None:
        """
        Apply patch only if the stored version equals expected_version.

        Returns the updated task, or None when the version (or the row) no longer matches.
        """
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValidationError(f"Fields not patchable: {', '.join(sorted(unknown))}", task_id=task_id)

        fields: list[str] = []
        params: list[Any] = []

        def put(column: str, value: Any) -> None:
            fields.append(f"{column} = ?")
            params.append(value)

        for key, value in patch.items():
            if key == "status":
                put("status", TaskStatus(value).value)
            elif key == "assignment":
                put("assignee_id", value.assignee_id)
                put("assignee_name", value.assignee_name)
                put("reviewer_id", value.reviewer_id)
                put("reviewer_name", value.reviewer_name)
                put("assigned_at", _ts(value.assigned_at))
                put("last_status_change_at", _ts(value.last_status_change_at))
            elif key == "tags":
                put("tags", self._tags_to_str(normalize_tags(value)))
            elif key == "due_date":
                put("due_date", _ts(value))
            elif key in ("priority", "category"):
                put(key, str(getattr(value, "value", value)))
            else:
                put(key, value)

        fields.append("version = version + 1")
        fields.append("updated_at = ?")
        params.append(datetime.now(UTC).timestamp())
        params.extend([task_id, int(expected_version)])

        sql = f"UPDATE tasks SET {', '.join(fields)} WHERE id = ? AND version = ?"

        with self._session() as conn:
            cur = conn.execute(sql, params)
            conn.commit()
            if cur.rowcount != 1:
                logger.debug("Version guard rejected write task_id=%s expected=%s", task_id, expected_version)
                return None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            updated = self._row_to_task(row)

        self._notify(updated)
        return updated

    def query_by_group(self, group_id: str) -> list[Task]:
        if not group_id:
            return []
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE group_id = ?
                ORDER BY due_date IS NULL, due_date ASC, created_at ASC
                """,
                (group_id,),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    # ---- public API: rejection ledger ----

    def append_rejection(self, record: RejectionRecord) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO rejections(id, task_id, reviewer_id, reviewer_name, reason, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.task_id,
                    record.reviewer_id,
                    record.reviewer_name,
                    record.reason,
                    _ts(record.timestamp),
                ),
            )
            conn.commit()

    def list_rejections(self, task_id: str) -> list[RejectionRecord]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM rejections WHERE task_id = ? ORDER BY timestamp ASC, seq ASC",
                (task_id,),
            ).fetchall()
            return [self._row_to_rejection(r) for r in rows]

    # ---- public API: series ----

    def create_series(self, series: SeriesRecord) -> None:
        rule = series.rule
        with self._session() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO series(
                    series_id, frequency, interval, days_of_week,
                    end_type, end_count, end_until, anchor_due_date,
                    created_by, group_id, active, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    series.series_id,
                    rule.frequency.value,
                    rule.interval,
                    json.dumps(sorted(rule.days_of_week)),
                    rule.end.kind.value,
                    rule.end.count,
                    _ts(rule.end.until),
                    _ts(rule.anchor_due_date),
                    series.created_by,
                    series.group_id,
                    1 if series.active else 0,
                    _ts(series.created_at),
                ),
            )
            conn.commit()

    def get_series(self, series_id: str) -> SeriesRecord | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM series WHERE series_id = ?", (series_id,)).fetchone()
            return self._row_to_series(row) if row else None

    def deactivate_series(self, series_id: str) -> None:
        with self._session() as conn:
            conn.execute("UPDATE series SET active = 0 WHERE series_id = ?", (series_id,))
            conn.commit()

    # ---- live changes ----

    def subscribe(
        self,
        *,
        on_change: TaskListener,
        task_id: str | None = None,
        group_id: str | None = None,
    ) -> Unsubscribe:
        """
        Register a callback fired after every write to the task (or any task of the group).

        Callbacks run synchronously on the writer's thread, after the commit.
        """
        if (task_id is None) == (group_id is None):
            raise ValidationError("subscribe needs exactly one of task_id or group_id")
        key = ("task", task_id) if task_id is not None else ("group", group_id)

        with self._listeners_lock:
            self._listeners.setdefault(key, []).append(on_change)

        def unsubscribe() -> None:
            with self._listeners_lock:
                listeners = self._listeners.get(key, [])
                if on_change in listeners:
                    listeners.remove(on_change)

        return unsubscribe

    def _notify(self, task: Task) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(("task", task.id), []))
            if task.group_id:
                listeners += self._listeners.get(("group", task.group_id), [])

        for listener in listeners:
            try:
                listener(task)
            except Exception:
                logger.exception("Task change listener failed task_id=%s", task.id)
