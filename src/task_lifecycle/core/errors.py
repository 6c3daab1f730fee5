# src/task_lifecycle/core/errors.py

"""
Error taxonomy of the lifecycle core.

Every error surfaced to the caller carries the task id, the attempted action
and the acting user id (any of them may be None when not applicable), so the
surrounding app can render a precise message.
"""

from __future__ import annotations


class TaskLifecycleError(Exception):
    """Base class for all errors raised by the lifecycle core."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        action: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.action = action
        self.actor_id = actor_id

    def with_context(
        self,
        *,
        task_id: str | None = None,
        action: str | None = None,
        actor_id: str | None = None,
    ) -> TaskLifecycleError:
        """Fill in missing context fields (existing values win) and return self."""
        if self.task_id is None:
            self.task_id = task_id
        if self.action is None:
            self.action = action
        if self.actor_id is None:
            self.actor_id = actor_id
        return self

    def __str__(self) -> str:
        ctx = []
        if self.task_id is not None:
            ctx.append(f"task={self.task_id}")
        if self.action is not None:
            ctx.append(f"action={self.action}")
        if self.actor_id is not None:
            ctx.append(f"actor={self.actor_id}")
        if not ctx:
            return self.message
        return f"{self.message} ({' '.join(ctx)})"


class Unauthorized(TaskLifecycleError):
    """The actor's resolved role does not permit the action."""


class InvalidTransition(TaskLifecycleError):
    """The action is not valid for the task's current (or terminal) status."""


class ValidationError(TaskLifecycleError):
    """Missing or invalid payload/input, e.g. an empty rejection reason."""


class TaskNotFound(TaskLifecycleError):
    pass


class ConcurrentModification(TaskLifecycleError):
    """An optimistic write lost against a concurrent writer (after one re-evaluation)."""


class StoreUnavailable(TaskLifecycleError):
    """Transient gateway failure; retried with backoff for idempotent calls."""


class DuplicateOccurrence(TaskLifecycleError):
    """The gateway already holds a task for this (series_id, occurrence_index)."""

    def __init__(self, series_id: str, occurrence_index: int) -> None:
        super().__init__(f"Occurrence {occurrence_index} of series {series_id} already exists")
        self.series_id = series_id
        self.occurrence_index = occurrence_index
