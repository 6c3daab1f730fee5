# src/task_lifecycle/groups/membership_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from ..core.errors import StoreUnavailable, ValidationError
from ..tasks.task_models import GroupMembership, GroupRole, as_utc

logger = logging.getLogger(__name__)


class MembershipStore:
    """
    SQLite-backed group membership directory.

    The lifecycle core only reads roles (get_membership). upsert_membership exists
    for seeding and for the console; group CRUD lives in the group service.
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3", *, timeout: float = 5.0) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = float(timeout)
        self._ensure_schema()
        logger.info("MembershipStore ready db=%s", self._db_path)

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=self._timeout)
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"Membership store unavailable: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"Membership store unavailable: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS group_members (
                    group_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'member',
                    joined_at REAL NOT NULL,
                    PRIMARY KEY (group_id, user_id)
                )
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_membership(row: sqlite3.Row) -> GroupMembership:
        return GroupMembership(
            group_id=str(row["group_id"]),
            user_id=str(row["user_id"]),
            role=GroupRole(row["role"]),
            joined_at=datetime.fromtimestamp(float(row["joined_at"]), UTC),
        )

    def get_membership(self, group_id: str, user_id: str) -> GroupMembership | None:
        if not group_id or not user_id:
            return None
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            ).fetchone()
            return self._row_to_membership(row) if row else None

    def list_members(self, group_id: str) -> list[GroupMembership]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM group_members WHERE group_id = ? ORDER BY joined_at ASC",
                (group_id,),
            ).fetchall()
            return [self._row_to_membership(r) for r in rows]

    def upsert_membership(
        self,
        group_id: str,
        user_id: str,
        role: GroupRole | str = GroupRole.MEMBER,
        *,
        joined_at: datetime | None = None,
    ) -> GroupMembership:
        if not group_id or not user_id:
            raise ValidationError("group_id and user_id are required")
        try:
            role = GroupRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role {role!r}") from None
        ts = as_utc(joined_at) if joined_at is not None else datetime.now(UTC)

        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO group_members(group_id, user_id, role, joined_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(group_id, user_id) DO UPDATE SET role = excluded.role
                """,
                (group_id, user_id, role.value, ts.timestamp()),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            ).fetchone()
        membership = self._row_to_membership(row)
        logger.info("Membership set group=%s user=%s role=%s", group_id, user_id, membership.role.value)
        return membership
