# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from task_lifecycle.core.retry import RetryPolicy
from task_lifecycle.core.state import AppState
from task_lifecycle.groups.membership_store import MembershipStore
from task_lifecycle.tasks.lifecycle import TaskLifecycle
from task_lifecycle.tasks.task_models import GroupRole, NewTask
from task_lifecycle.tasks.task_store import TaskStore

from .fakes import FakeClock, FakeMembershipDirectory, FakeTaskGateway


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeps() -> list[float]:
    """Delays requested by the retry policy (nothing actually sleeps)."""
    return []


@pytest.fixture()
def retry(sleeps: list[float]) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.1, jitter=0.0, sleep=sleeps.append)


@pytest.fixture()
def gateway() -> FakeTaskGateway:
    return FakeTaskGateway()


@pytest.fixture()
def directory() -> FakeMembershipDirectory:
    """
    Group g1:
    - alice: admin (also creates tasks)
    - bob: member (assignee)
    - rita: member (reviewer)
    - xavier: member with no role on the tasks
    """
    d = FakeMembershipDirectory()
    d.add("g1", "alice", GroupRole.ADMIN)
    d.add("g1", "bob")
    d.add("g1", "rita")
    d.add("g1", "xavier")
    return d


@pytest.fixture()
def lifecycle(
    gateway: FakeTaskGateway,
    directory: FakeMembershipDirectory,
    retry: RetryPolicy,
    clock: FakeClock,
) -> TaskLifecycle:
    return TaskLifecycle(gateway, directory, retry=retry, clock=clock)


@pytest.fixture()
def new_task() -> NewTask:
    return NewTask(
        title="Clean the kitchen",
        creator_id="alice",
        assignee_id="bob",
        assignee_name="Bob",
        reviewer_id="rita",
        reviewer_name="Rita",
        group_id="g1",
    )


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskline-test",
        data_dir=tmp_path,
        db_path=tmp_path / "tasks.sqlite3",
        sqlite_timeout=1.0,
        console_user="",
    )


@pytest.fixture()
def task_store(settings: SimpleNamespace) -> TaskStore:
    return TaskStore(settings.db_path, timeout=settings.sqlite_timeout)


@pytest.fixture()
def membership_store(settings: SimpleNamespace) -> MembershipStore:
    return MembershipStore(settings.db_path, timeout=settings.sqlite_timeout)


@pytest.fixture()
def state(settings: SimpleNamespace, task_store: TaskStore, membership_store: MembershipStore) -> AppState:
    """
    AppState wired with the real SQLite stores in a tmp directory.
    """
    return AppState(
        settings=settings,
        task_store=task_store,
        memberships=membership_store,
        lifecycle=TaskLifecycle(task_store, membership_store),
    )
