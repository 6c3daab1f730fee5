# src/task_lifecycle/tasks/task_models.py

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .recurrence import RecurrenceRule


class TaskStatus(StrEnum):
    """
    Canonical group-task lifecycle status.

    Notes:
    - older records may carry "doneByAssignee" or "submitted"; both are read as
      PENDING_REVIEW (there is exactly one review-pending state).
    - REVIEWED is terminal.
    """

    ASSIGNED = "assigned"
    IN_PROGRESS = "inProgress"
    PENDING_REVIEW = "pendingReview"
    REVIEWED = "reviewed"
    REOPENED = "reopened"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.ASSIGNED
        if raw in _LEGACY_STATUS_ALIASES:
            return _LEGACY_STATUS_ALIASES[raw]
        return cls(raw)

    @property
    def is_terminal(self) -> bool:
        return self is TaskStatus.REVIEWED

    @property
    def is_editable(self) -> bool:
        """Descriptive fields and the assignment may change only in these states."""
        return self in (TaskStatus.ASSIGNED, TaskStatus.REOPENED)


_LEGACY_STATUS_ALIASES: dict[str, TaskStatus] = {
    "doneByAssignee": TaskStatus.PENDING_REVIEW,
    "submitted": TaskStatus.PENDING_REVIEW,
}


class TaskAction(StrEnum):
    START = "start"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    RESUME = "resume"


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskCategory(StrEnum):
    WORK = "work"
    PERSONAL = "personal"
    SHOPPING = "shopping"
    HEALTH = "health"
    FINANCE = "finance"
    OTHER = "other"


class GroupRole(StrEnum):
    ADMIN = "admin"
    MEMBER = "member"


@dataclass(frozen=True, slots=True)
class Assignment:
    assignee_id: str
    assigned_at: datetime
    last_status_change_at: datetime
    assignee_name: str | None = None
    reviewer_id: str | None = None
    reviewer_name: str | None = None


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    title: str
    creator_id: str
    status: TaskStatus
    assignment: Assignment
    created_at: datetime
    updated_at: datetime

    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    category: TaskCategory = TaskCategory.OTHER
    tags: frozenset[str] = frozenset()
    group_id: str | None = None
    due_date: datetime | None = None

    series_id: str | None = None
    occurrence_index: int | None = None

    # Optimistic concurrency token, bumped by the store on every write.
    version: int = 0


@dataclass(slots=True)
class NewTask:
    """Input for creating a task (directly or as the template of a series)."""

    title: str
    creator_id: str
    assignee_id: str
    assignee_name: str | None = None
    reviewer_id: str | None = None
    reviewer_name: str | None = None
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    category: TaskCategory = TaskCategory.OTHER
    tags: Iterable[str] = field(default_factory=tuple)
    group_id: str | None = None
    due_date: datetime | None = None

    def build(
        self,
        *,
        task_id: str,
        now: datetime,
        due_date: datetime | None = None,
        series_id: str | None = None,
        occurrence_index: int | None = None,
    ) -> Task:
        due = due_date if due_date is not None else self.due_date
        return Task(
            id=task_id,
            title=self.title.strip(),
            creator_id=self.creator_id,
            status=TaskStatus.ASSIGNED,
            assignment=Assignment(
                assignee_id=self.assignee_id,
                assignee_name=self.assignee_name,
                reviewer_id=self.reviewer_id or None,
                reviewer_name=self.reviewer_name,
                assigned_at=now,
                last_status_change_at=now,
            ),
            created_at=now,
            updated_at=now,
            description=(self.description or "").strip(),
            priority=TaskPriority(self.priority),
            category=TaskCategory(self.category),
            tags=normalize_tags(self.tags),
            group_id=self.group_id or None,
            due_date=as_utc(due) if due is not None else None,
            series_id=series_id,
            occurrence_index=occurrence_index,
        )


@dataclass(frozen=True, slots=True)
class RejectionRecord:
    id: str
    task_id: str
    reviewer_id: str
    reason: str
    timestamp: datetime
    reviewer_name: str | None = None


@dataclass(frozen=True, slots=True)
class GroupMembership:
    group_id: str
    user_id: str
    role: GroupRole
    joined_at: datetime


@dataclass(frozen=True, slots=True)
class SeriesRecord:
    """A recurring series: the rule that drives it and whether it still produces occurrences."""

    series_id: str
    rule: RecurrenceRule
    created_by: str
    created_at: datetime
    group_id: str | None = None
    active: bool = True


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_tags(tags: Iterable[str] | None) -> frozenset[str]:
    if not tags:
        return frozenset()
    return frozenset(t.strip() for t in tags if t and t.strip())
