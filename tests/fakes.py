# tests/fakes.py

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from task_lifecycle.core.errors import DuplicateOccurrence, StoreUnavailable, ValidationError
from task_lifecycle.tasks.task_models import (
    Assignment,
    GroupMembership,
    GroupRole,
    RejectionRecord,
    SeriesRecord,
    Task,
    TaskStatus,
)

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock: returns `now` and moves only when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTaskGateway:
    """
    In-memory TaskGateway used by core unit tests.

    Mirrors the SQLite store contract (version guard, occurrence uniqueness,
    idempotent ledger appends, change listeners) and adds knobs to inject
    transient failures and concurrent writers.
    """

    def __init__(self) -> None:
        self.tasks: dict[str, Task] = {}
        self.rejections: list[RejectionRecord] = []
        self.series: dict[str, SeriesRecord] = {}
        self.calls: list[str] = []

        self._failures: dict[str, int] = {}
        # Number of upcoming update_if_version calls that lose against a concurrent writer.
        self.stale_writes = 0
        # One-shot hook run inside the next update_if_version, before the version check.
        self.before_update: Callable[[FakeTaskGateway, str], None] | None = None
        # Number of upcoming get_occurrence calls that miss (a racing creator).
        self.occurrence_misses = 0

        self._listeners: list[tuple[str, str, Callable[[Task], None]]] = []

    # ---- test knobs ----

    def fail(self, method: str, times: int = 1) -> None:
        self._failures[method] = times

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        left = self._failures.get(method, 0)
        if left > 0:
            self._failures[method] = left - 1
            raise StoreUnavailable(f"{method} unavailable (injected)")

    def force_write(self, task_id: str, **changes: Any) -> Task:
        """Write as another client would: bypasses the version check but bumps the version."""
        current = self.tasks[task_id]
        updated = replace(current, version=current.version + 1, **changes)
        self.tasks[task_id] = updated
        return updated

    # ---- TaskGateway ----

    def get(self, task_id: str) -> Task | None:
        self._enter("get")
        return self.tasks.get(task_id)

    def get_occurrence(self, series_id: str, occurrence_index: int) -> Task | None:
        self._enter("get_occurrence")
        if self.occurrence_misses > 0:
            self.occurrence_misses -= 1
            return None
        for task in self.tasks.values():
            if task.series_id == series_id and task.occurrence_index == occurrence_index:
                return task
        return None

    def create(self, task: Task) -> Task:
        self._enter("create")
        if task.id in self.tasks:
            raise ValidationError("Task id already exists", task_id=task.id)
        if task.series_id is not None and task.occurrence_index is not None:
            for existing in self.tasks.values():
                if (existing.series_id, existing.occurrence_index) == (task.series_id, task.occurrence_index):
                    raise DuplicateOccurrence(task.series_id, task.occurrence_index)
        self.tasks[task.id] = task
        self._notify(task)
        return task

    def update_if_version(
        self,
        task_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
    ) -> Task | None:
        self._enter("update_if_version")
        if self.before_update is not None:
            hook, self.before_update = self.before_update, None
            hook(self, task_id)
        if self.stale_writes > 0:
            self.stale_writes -= 1
            self.force_write(task_id)

        current = self.tasks.get(task_id)
        if current is None or current.version != expected_version:
            return None
        updated = replace(current, version=current.version + 1, **dict(patch))
        self.tasks[task_id] = updated
        self._notify(updated)
        return updated

    def query_by_group(self, group_id: str) -> list[Task]:
        self._enter("query_by_group")
        far = datetime.max.replace(tzinfo=UTC)
        found = [t for t in self.tasks.values() if t.group_id == group_id]
        return sorted(found, key=lambda t: (t.due_date is None, t.due_date or far, t.created_at))

    def append_rejection(self, record: RejectionRecord) -> None:
        self._enter("append_rejection")
        if any(r.id == record.id for r in self.rejections):
            return
        self.rejections.append(record)

    def list_rejections(self, task_id: str) -> list[RejectionRecord]:
        self._enter("list_rejections")
        return [r for r in self.rejections if r.task_id == task_id]

    def create_series(self, series: SeriesRecord) -> None:
        self._enter("create_series")
        self.series.setdefault(series.series_id, series)

    def get_series(self, series_id: str) -> SeriesRecord | None:
        self._enter("get_series")
        return self.series.get(series_id)

    def deactivate_series(self, series_id: str) -> None:
        self._enter("deactivate_series")
        if series_id in self.series:
            self.series[series_id] = replace(self.series[series_id], active=False)

    def subscribe(self, *, on_change, task_id=None, group_id=None):
        entry = ("task", task_id, on_change) if task_id is not None else ("group", group_id, on_change)
        self._listeners.append(entry)
        return lambda: self._listeners.remove(entry) if entry in self._listeners else None

    def _notify(self, task: Task) -> None:
        for kind, key, listener in list(self._listeners):
            if (kind == "task" and key == task.id) or (kind == "group" and key == task.group_id):
                listener(task)


class FakeMembershipDirectory:
    def __init__(self) -> None:
        self.members: dict[tuple[str, str], GroupMembership] = {}

    def add(self, group_id: str, user_id: str, role: GroupRole | str = GroupRole.MEMBER) -> GroupMembership:
        m = GroupMembership(group_id=group_id, user_id=user_id, role=GroupRole(role), joined_at=T0)
        self.members[(group_id, user_id)] = m
        return m

    def get_membership(self, group_id: str, user_id: str) -> GroupMembership | None:
        return self.members.get((group_id, user_id))


def make_task(
    *,
    task_id: str = "t1",
    status: TaskStatus = TaskStatus.ASSIGNED,
    assignee_id: str = "bob",
    reviewer_id: str | None = "rita",
    group_id: str | None = "g1",
    creator_id: str = "alice",
    **overrides: Any,
) -> Task:
    """Build a Task directly, bypassing the lifecycle (for pure-logic tests)."""
    return Task(
        id=task_id,
        title=overrides.pop("title", "Clean the kitchen"),
        creator_id=creator_id,
        status=status,
        assignment=Assignment(
            assignee_id=assignee_id,
            assignee_name=overrides.pop("assignee_name", "Bob"),
            reviewer_id=reviewer_id,
            reviewer_name=overrides.pop("reviewer_name", "Rita" if reviewer_id else None),
            assigned_at=T0,
            last_status_change_at=T0,
        ),
        created_at=T0,
        updated_at=T0,
        group_id=group_id,
        **overrides,
    )
