# src/task_lifecycle/core/state.py

from __future__ import annotations

from dataclasses import dataclass

from ..groups.membership_store import MembershipStore
from ..tasks.lifecycle import TaskLifecycle
from ..tasks.task_store import TaskStore


@dataclass
class AppState:
    # Store Settings on the state for easy access in other modules later.
    settings: object

    task_store: TaskStore
    memberships: MembershipStore
    lifecycle: TaskLifecycle

    # Console session only: who is typing. The core itself never reads this.
    current_user: str | None = None
