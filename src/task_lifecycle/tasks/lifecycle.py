# src/task_lifecycle/tasks/lifecycle.py

from __future__ import annotations

"""
Task lifecycle orchestrator.

The entry point the surrounding app calls. Every status change goes through
apply_transition():

    load task -> resolve roles -> status machine -> version-guarded write
    -> [reject] ledger append -> [reviewed series member] advance series

A lost optimistic write is re-evaluated once against a fresh read before
ConcurrentModification is surfaced. No state is cached between calls.
"""

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from ..core.errors import (
    ConcurrentModification,
    InvalidTransition,
    StoreUnavailable,
    TaskLifecycleError,
    TaskNotFound,
    Unauthorized,
    ValidationError,
)
from ..core.ports import MembershipDirectory, TaskGateway, TaskListener, Unsubscribe
from ..core.retry import NO_RETRY, RetryPolicy
from .permissions import Actor, resolve_actor, resolve_role
from .recurrence import RecurrenceEngine, RecurrenceRule
from .rejection_ledger import RejectionLedger
from .status_machine import coerce_action, rejection_reason, transition
from .task_models import (
    GroupMembership,
    GroupRole,
    NewTask,
    RejectionRecord,
    SeriesRecord,
    Task,
    TaskAction,
    TaskCategory,
    TaskPriority,
    TaskStatus,
    as_utc,
    normalize_tags,
    utc_now,
)

logger = logging.getLogger(__name__)

_DETAIL_FIELDS = frozenset({"title", "description", "priority", "category", "tags", "due_date"})
_ASSIGNMENT_FIELDS = frozenset({"assignee_id", "assignee_name", "reviewer_id", "reviewer_name"})


class TaskLifecycle:
    def __init__(
        self,
        gateway: TaskGateway,
        memberships: MembershipDirectory,
        *,
        retry: RetryPolicy = NO_RETRY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gateway = gateway
        self._memberships = memberships
        self._retry = retry
        self._clock = clock
        self.ledger = RejectionLedger(gateway, retry=retry)
        self.recurrence = RecurrenceEngine(gateway, retry=retry, clock=clock)

    # ---- creation ----

    def create_task(self, new: NewTask) -> Task:
        self._check_new_task(new)
        task = new.build(task_id=uuid.uuid4().hex, now=self._clock())
        # One-off creates are not idempotent, so they are attempted once.
        created = self._gateway.create(task)
        logger.info(
            "Task created id=%s group=%s assignee=%s reviewer=%s",
            created.id,
            created.group_id,
            created.assignment.assignee_id,
            created.assignment.reviewer_id,
        )
        return created

    def create_recurring_task(self, new: NewTask, rule: RecurrenceRule) -> Task:
        self._check_new_task(new)
        return self.recurrence.materialize_series(new, rule)

    # ---- status changes ----

    def apply_transition(
        self,
        task_id: str,
        actor_id: str,
        action: TaskAction | str,
        payload: Mapping[str, Any] | None = None,
    ) -> Task:
        act = coerce_action(action, task_id=task_id, actor_id=actor_id)
        ctx = {"task_id": task_id, "action": act.value, "actor_id": actor_id}

        rejection_id = uuid.uuid4().hex if act == TaskAction.REJECT else None
        written: Task | None = None
        try:
            for attempt in (1, 2):
                task = self._load(task_id)
                actor = self._actor(task, actor_id, payload)
                now = self._clock()
                nxt = transition(task, actor, act, payload, now=now)

                written = self._retry.call(
                    self._gateway.update_if_version,
                    task.id,
                    {"status": nxt.status, "assignment": nxt.assignment},
                    task.version,
                )
                if written is not None:
                    break
                logger.warning(
                    "Version conflict on task %s (action=%s attempt=%d expected_version=%s)",
                    task_id,
                    act.value,
                    attempt,
                    task.version,
                )
            else:
                raise ConcurrentModification("Task was modified concurrently", **ctx)

            # Appended only once the reopen is persisted.
            if rejection_id is not None:
                self.ledger.record(
                    written,
                    actor.user_id,
                    actor.name,
                    rejection_reason(payload),
                    at=now,
                    record_id=rejection_id,
                )
        except TaskLifecycleError as e:
            raise e.with_context(**ctx)

        logger.info(
            "Task %s %s -> %s by %s",
            task_id,
            act.value,
            written.status.value,
            actor_id,
        )

        if written.status == TaskStatus.REVIEWED and written.series_id:
            try:
                self.recurrence.advance_series(written)
            except StoreUnavailable:
                logger.exception(
                    "Task %s reviewed, but occurrence %s of series %s was not created; "
                    "call advance_series(%r) once the store is back",
                    task_id,
                    (written.occurrence_index or 0) + 1,
                    written.series_id,
                    task_id,
                )
        return written

    def advance_series(self, task_id: str) -> Task | None:
        """Re-trigger series continuation for a reviewed occurrence (safe to repeat)."""
        task = self._load(task_id)
        try:
            return self.recurrence.advance_series(task)
        except TaskLifecycleError as e:
            raise e.with_context(task_id=task_id, action="advance_series")

    # ---- field edits (no status change) ----

    def update_task_details(self, task_id: str, actor_id: str, **changes: Any) -> Task:
        """
        Edit descriptive fields or the assignment of a task.

        Allowed for the creator or a group admin, and only while the task is
        Assigned or Reopened.
        """
        ctx = {"task_id": task_id, "action": "update", "actor_id": actor_id}
        unknown = set(changes) - _DETAIL_FIELDS - _ASSIGNMENT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}", **ctx)
        if not changes:
            return self._load(task_id)

        try:
            for attempt in (1, 2):
                task = self._load(task_id)
                roles = resolve_role(task, actor_id, self._membership(task.group_id, actor_id))
                if task.creator_id != actor_id and not roles.is_admin:
                    raise Unauthorized("Only the creator or a group admin may edit this task")
                if not task.status.is_editable:
                    raise InvalidTransition(f"Task cannot be edited while {task.status.value}")

                patch = self._detail_patch(task, changes)
                written = self._retry.call(self._gateway.update_if_version, task.id, patch, task.version)
                if written is not None:
                    logger.info("Task %s updated by %s fields=%s", task_id, actor_id, sorted(changes))
                    return written
                logger.warning("Version conflict on task %s (update attempt=%d)", task_id, attempt)
            raise ConcurrentModification("Task was modified concurrently")
        except TaskLifecycleError as e:
            raise e.with_context(**ctx)

    def cancel_series(self, series_id: str, actor_id: str) -> SeriesRecord:
        """Stop a series from producing further occurrences. Existing tasks are kept."""
        ctx = {"action": "cancel_series", "actor_id": actor_id}
        series = self._retry.call(self._gateway.get_series, series_id)
        if series is None:
            raise TaskNotFound(f"Series {series_id} not found", **ctx)

        if series.created_by != actor_id:
            membership = self._membership(series.group_id, actor_id)
            if membership is None or membership.role != GroupRole.ADMIN:
                raise Unauthorized("Only the series creator or a group admin may cancel it", **ctx)

        if series.active:
            self._retry.call(self._gateway.deactivate_series, series_id)
            logger.info("Series %s cancelled by %s", series_id, actor_id)
        return replace(series, active=False)

    # ---- reads ----

    def get_task(self, task_id: str) -> Task:
        return self._load(task_id)

    def list_tasks_for_group(self, group_id: str) -> list[Task]:
        return self._retry.call(self._gateway.query_by_group, group_id)

    def list_rejections(self, task_id: str) -> list[RejectionRecord]:
        return self.ledger.list_rejections(task_id)

    def watch_task(self, task_id: str, on_change: TaskListener) -> Unsubscribe:
        return self._gateway.subscribe(task_id=task_id, on_change=on_change)

    def watch_group(self, group_id: str, on_change: TaskListener) -> Unsubscribe:
        return self._gateway.subscribe(group_id=group_id, on_change=on_change)

    # ---- helpers ----

    def _load(self, task_id: str) -> Task:
        task = self._retry.call(self._gateway.get, task_id)
        if task is None:
            raise TaskNotFound("Task not found", task_id=task_id)
        return task

    def _membership(self, group_id: str | None, user_id: str) -> GroupMembership | None:
        if not group_id or not user_id:
            return None
        return self._retry.call(self._memberships.get_membership, group_id, user_id)

    def _actor(self, task: Task, actor_id: str, payload: Mapping[str, Any] | None) -> Actor:
        raw_name = (payload or {}).get("actor_name")
        fallback = raw_name.strip() if isinstance(raw_name, str) and raw_name.strip() else None
        return resolve_actor(
            task,
            actor_id,
            self._membership(task.group_id, actor_id),
            fallback_name=fallback,
        )

    def _check_new_task(self, new: NewTask) -> None:
        ctx = {"action": "create", "actor_id": new.creator_id}
        if not (new.title or "").strip():
            raise ValidationError("title is required", **ctx)
        if not (new.creator_id or "").strip():
            raise ValidationError("creator_id is required", **ctx)
        if not (new.assignee_id or "").strip():
            raise ValidationError("assignee_id is required", **ctx)
        try:
            TaskPriority(new.priority)
            TaskCategory(new.category)
        except ValueError as e:
            raise ValidationError(str(e), **ctx) from None

        if new.group_id and self._membership(new.group_id, new.creator_id) is None:
            raise Unauthorized("Only group members may create tasks in this group", **ctx)

    @staticmethod
    def _detail_patch(task: Task, changes: Mapping[str, Any]) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        for key in _DETAIL_FIELDS & set(changes):
            value = changes[key]
            if key == "title":
                value = (value or "").strip()
                if not value:
                    raise ValidationError("title is required")
            elif key == "description":
                value = (value or "").strip()
            elif key == "priority":
                value = _coerce_enum(TaskPriority, value)
            elif key == "category":
                value = _coerce_enum(TaskCategory, value)
            elif key == "tags":
                value = normalize_tags(value)
            elif key == "due_date":
                value = as_utc(value) if value is not None else None
            patch[key] = value

        assignment_changes = {
            k: ((changes[k] or "").strip() or None) for k in _ASSIGNMENT_FIELDS & set(changes)
        }
        if assignment_changes:
            if "assignee_id" in assignment_changes and assignment_changes["assignee_id"] is None:
                raise ValidationError("assignee_id is required")
            patch["assignment"] = replace(task.assignment, **assignment_changes)
        return patch


def _coerce_enum(enum_cls: Any, value: Any) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {enum_cls.__name__} {value!r}") from None
