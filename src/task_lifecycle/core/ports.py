# src/task_lifecycle/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The lifecycle core depends on Protocols instead of concrete implementations.
This keeps the persistence technology and the identity/group service swappable
and makes testing easier (see tests/fakes.py).
"""

from collections.abc import Callable, Mapping
from typing import Any, Protocol

from ..tasks.task_models import GroupMembership, RejectionRecord, SeriesRecord, Task

TaskListener = Callable[[Task], None]
Unsubscribe = Callable[[], None]


class TaskGateway(Protocol):
    """
    Persistence/query boundary for tasks, the rejection ledger and series.

    Contract notes:
    - create() must raise DuplicateOccurrence for an existing (series_id, occurrence_index).
    - update_if_version() returns None when the stored version differs from expected_version.
    - append_rejection() is a no-op for a record id that already exists.
    - transient failures are raised as StoreUnavailable.
    """

    def get(self, task_id: str) -> Task | None: ...

    def get_occurrence(self, series_id: str, occurrence_index: int) -> Task | None: ...

    def create(self, task: Task) -> Task: ...

    def update_if_version(
            self,
            task_id: str,
            patch: Mapping[str, Any],
            expected_version: int,
    ) -> Task | None: ...

    def query_by_group(self, group_id: str) -> list[Task]: ...

    def append_rejection(self, record: RejectionRecord) -> None: ...

    def list_rejections(self, task_id: str) -> list[RejectionRecord]: ...

    # Series
    def create_series(self, series: SeriesRecord) -> None: ...
    def get_series(self, series_id: str) -> SeriesRecord | None: ...
    def deactivate_series(self, series_id: str) -> None: ...

    # Live changes
    def subscribe(
            self,
            *,
            on_change: TaskListener,
            task_id: str | None = None,
            group_id: str | None = None,
    ) -> Unsubscribe: ...


class MembershipDirectory(Protocol):
    """Read side of the group/identity service: roles only."""

    def get_membership(self, group_id: str, user_id: str) -> GroupMembership | None: ...
