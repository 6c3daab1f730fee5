# tests/test_task_store.py

from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import timedelta

import pytest

from task_lifecycle.core.errors import DuplicateOccurrence, ValidationError
from task_lifecycle.tasks.recurrence import EndCondition, Frequency, RecurrenceRule
from task_lifecycle.tasks.task_models import RejectionRecord, SeriesRecord, TaskPriority, TaskStatus
from task_lifecycle.tasks.task_store import TaskStore

from .fakes import T0, make_task


def test_task_store_create_get_roundtrip(task_store: TaskStore) -> None:
    task = make_task(
        tags=frozenset({"home", "weekly"}),
        priority=TaskPriority.HIGH,
        due_date=T0 + timedelta(days=2),
        description="under the sink too",
    )
    created = task_store.create(task)

    assert created == task
    assert task_store.get(task.id) == task
    assert task_store.get("missing") is None
    assert task_store.count_tasks() == 1


def test_task_store_duplicate_id_is_validation_error(task_store: TaskStore) -> None:
    task_store.create(make_task())
    with pytest.raises(ValidationError):
        task_store.create(make_task())


def test_task_store_occurrence_uniqueness(task_store: TaskStore) -> None:
    task_store.create(make_task(task_id="a", series_id="s1", occurrence_index=0))
    task_store.create(make_task(task_id="b", series_id="s1", occurrence_index=1))

    with pytest.raises(DuplicateOccurrence) as ei:
        task_store.create(make_task(task_id="c", series_id="s1", occurrence_index=1))
    assert (ei.value.series_id, ei.value.occurrence_index) == ("s1", 1)

    assert task_store.get_occurrence("s1", 1).id == "b"
    assert task_store.get_occurrence("s1", 2) is None


def test_task_store_version_guard(task_store: TaskStore) -> None:
    task = task_store.create(make_task())

    updated = task_store.update_if_version(task.id, {"status": TaskStatus.IN_PROGRESS}, 0)
    assert updated is not None
    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.version == 1

    assert task_store.update_if_version(task.id, {"status": TaskStatus.PENDING_REVIEW}, 0) is None
    assert task_store.get(task.id).status == TaskStatus.IN_PROGRESS
    assert task_store.update_if_version("missing", {"status": TaskStatus.REVIEWED}, 0) is None


def test_task_store_patches_assignment_and_details(task_store: TaskStore) -> None:
    task = task_store.create(make_task())
    assignment = replace(task.assignment, assignee_id="xavier", last_status_change_at=T0 + timedelta(hours=1))

    updated = task_store.update_if_version(
        task.id,
        {"assignment": assignment, "title": "Mop", "tags": ["a", "b"], "due_date": T0},
        task.version,
    )

    assert updated.assignment == assignment
    assert updated.title == "Mop"
    assert updated.tags == frozenset({"a", "b"})
    assert updated.due_date == T0


def test_task_store_rejects_unknown_patch_fields(task_store: TaskStore) -> None:
    task = task_store.create(make_task())
    with pytest.raises(ValidationError):
        task_store.update_if_version(task.id, {"version": 7}, 0)


def test_task_store_query_by_group_orders_by_due_date(task_store: TaskStore) -> None:
    task_store.create(make_task(task_id="no-due"))
    task_store.create(make_task(task_id="later", due_date=T0 + timedelta(days=3)))
    task_store.create(make_task(task_id="sooner", due_date=T0 + timedelta(days=1)))
    task_store.create(make_task(task_id="other", group_id="g2"))

    assert [t.id for t in task_store.query_by_group("g1")] == ["sooner", "later", "no-due"]
    assert task_store.query_by_group("") == []


def test_task_store_reads_legacy_review_status(task_store: TaskStore, settings) -> None:
    task_store.create(make_task())
    conn = sqlite3.connect(str(settings.db_path))
    conn.execute("UPDATE tasks SET status = 'doneByAssignee' WHERE id = 't1'")
    conn.commit()
    conn.close()

    assert task_store.get("t1").status == TaskStatus.PENDING_REVIEW


def test_task_store_rejection_ledger(task_store: TaskStore) -> None:
    late = RejectionRecord(id="r2", task_id="t1", reviewer_id="rita", reason="b", timestamp=T0 + timedelta(minutes=1))
    early = RejectionRecord(id="r1", task_id="t1", reviewer_id="alice", reason="a", timestamp=T0, reviewer_name="Alice")

    task_store.append_rejection(late)
    task_store.append_rejection(early)
    task_store.append_rejection(early)

    assert task_store.list_rejections("t1") == [early, late]
    assert task_store.list_rejections("t2") == []


def test_task_store_series_roundtrip(task_store: TaskStore) -> None:
    rule = RecurrenceRule(
        Frequency.WEEKLY,
        T0,
        interval=2,
        days_of_week=frozenset({0, 3}),
        end=EndCondition.until_date(T0 + timedelta(days=60)),
    )
    series = SeriesRecord(series_id="s1", rule=rule, created_by="alice", created_at=T0, group_id="g1")

    task_store.create_series(series)
    task_store.create_series(replace(series, created_by="mallory"))
    assert task_store.get_series("s1") == series

    task_store.deactivate_series("s1")
    assert task_store.get_series("s1").active is False
    assert task_store.get_series("nope") is None


def test_task_store_subscriptions(task_store: TaskStore) -> None:
    seen: list[tuple[str, str]] = []

    stop_task = task_store.subscribe(task_id="t1", on_change=lambda t: seen.append(("task", t.status.value)))
    task_store.subscribe(group_id="g1", on_change=lambda t: seen.append(("group", t.id)))

    def broken(_task) -> None:
        raise RuntimeError("listener bug")

    task_store.subscribe(group_id="g1", on_change=broken)

    task_store.create(make_task())
    stop_task()
    task_store.update_if_version("t1", {"status": TaskStatus.IN_PROGRESS}, 0)

    assert seen == [("task", "assigned"), ("group", "t1"), ("group", "t1")]


def test_task_store_subscribe_needs_one_key(task_store: TaskStore) -> None:
    with pytest.raises(ValidationError):
        task_store.subscribe(on_change=lambda t: None)
    with pytest.raises(ValidationError):
        task_store.subscribe(task_id="t1", group_id="g1", on_change=lambda t: None)


def test_task_store_close_drops_listeners(task_store: TaskStore) -> None:
    seen: list[str] = []
    task_store.subscribe(group_id="g1", on_change=lambda t: seen.append(t.id))

    task_store.close()
    task_store.create(make_task())

    assert seen == []
    assert task_store.get("t1") is not None
