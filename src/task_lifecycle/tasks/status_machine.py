# src/task_lifecycle/tasks/status_machine.py

from __future__ import annotations

"""
Status machine for group tasks.

Pure logic: no I/O, no retries. Given (task, actor, action, payload) it either
returns the next Task or raises one of InvalidTransition / Unauthorized /
ValidationError. Checks run in a fixed order:

1. the task is not terminal
2. the action is valid for the current status
3. the actor's resolved roles permit the action
4. the payload is complete (reject needs a non-empty reason)
"""

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..core.errors import InvalidTransition, Unauthorized, ValidationError
from .permissions import Actor, RoleSet
from .task_models import Task, TaskAction, TaskStatus


class Gate(str, Enum):
    ASSIGNEE = "assignee"
    REVIEWER_OR_ADMIN = "reviewer_or_admin"

    def allows(self, roles: RoleSet) -> bool:
        if self is Gate.ASSIGNEE:
            # Admin status alone never grants assignee-only actions.
            return roles.is_assignee
        return roles.can_review


@dataclass(frozen=True, slots=True)
class Edge:
    to_status: TaskStatus
    gate: Gate


TRANSITIONS: dict[tuple[TaskStatus, TaskAction], Edge] = {
    (TaskStatus.ASSIGNED, TaskAction.START): Edge(TaskStatus.IN_PROGRESS, Gate.ASSIGNEE),
    (TaskStatus.IN_PROGRESS, TaskAction.SUBMIT): Edge(TaskStatus.PENDING_REVIEW, Gate.ASSIGNEE),
    (TaskStatus.PENDING_REVIEW, TaskAction.APPROVE): Edge(TaskStatus.REVIEWED, Gate.REVIEWER_OR_ADMIN),
    (TaskStatus.PENDING_REVIEW, TaskAction.REJECT): Edge(TaskStatus.REOPENED, Gate.REVIEWER_OR_ADMIN),
    (TaskStatus.REOPENED, TaskAction.RESUME): Edge(TaskStatus.IN_PROGRESS, Gate.ASSIGNEE),
}


def coerce_action(action: TaskAction | str, *, task_id: str | None = None, actor_id: str | None = None) -> TaskAction:
    if isinstance(action, TaskAction):
        return action
    try:
        return TaskAction(str(action).strip().lower())
    except ValueError:
        raise InvalidTransition(
            f"Unknown action {action!r}", task_id=task_id, action=str(action), actor_id=actor_id
        ) from None


def available_actions(task: Task, roles: RoleSet) -> list[TaskAction]:
    """Actions the given roles may perform on the task right now."""
    if task.status.is_terminal:
        return []
    return [
        action
        for (status, action), edge in TRANSITIONS.items()
        if status == task.status and edge.gate.allows(roles)
    ]


def rejection_reason(payload: Mapping[str, Any] | None) -> str:
    raw = (payload or {}).get("reason")
    return raw.strip() if isinstance(raw, str) else ""


def transition(
    task: Task,
    actor: Actor,
    action: TaskAction | str,
    payload: Mapping[str, Any] | None = None,
    *,
    now: datetime | None = None,
) -> Task:
    act = coerce_action(action, task_id=task.id, actor_id=actor.user_id)
    ctx = {"task_id": task.id, "action": act.value, "actor_id": actor.user_id}

    if task.status.is_terminal:
        raise InvalidTransition(f"Task is already {task.status.value}", **ctx)

    edge = TRANSITIONS.get((task.status, act))
    if edge is None:
        raise InvalidTransition(f"Cannot {act.value} a task that is {task.status.value}", **ctx)

    if not edge.gate.allows(actor.roles):
        raise Unauthorized(f"Only the {edge.gate.value.replace('_', ' ')} may {act.value} this task", **ctx)

    if act == TaskAction.REJECT and not rejection_reason(payload):
        raise ValidationError("A rejection reason is required", **ctx)

    ts = now or datetime.now(UTC)
    return replace(
        task,
        status=edge.to_status,
        assignment=replace(task.assignment, last_status_change_at=ts),
        updated_at=ts,
    )
