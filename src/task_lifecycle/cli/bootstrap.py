# src/task_lifecycle/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the SQLite gateway and membership directory into the lifecycle core.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.state import AppState
from ..groups.membership_store import MembershipStore
from ..tasks.lifecycle import TaskLifecycle
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    task_store = TaskStore(settings.db_path, timeout=settings.sqlite_timeout)
    memberships = MembershipStore(settings.db_path, timeout=settings.sqlite_timeout)
    lifecycle = TaskLifecycle(task_store, memberships, retry=settings.retry_policy())

    return AppState(
        settings=settings,
        task_store=task_store,
        memberships=memberships,
        lifecycle=lifecycle,
        current_user=(settings.console_user or None),
    )
