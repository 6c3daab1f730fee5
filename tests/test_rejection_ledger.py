# tests/test_rejection_ledger.py

from __future__ import annotations

from datetime import timedelta

import pytest

from task_lifecycle.core.errors import StoreUnavailable, ValidationError
from task_lifecycle.core.retry import RetryPolicy
from task_lifecycle.tasks.rejection_ledger import RejectionLedger

from .fakes import T0, FakeTaskGateway, make_task


def test_record_and_list_in_time_order(gateway: FakeTaskGateway, retry: RetryPolicy) -> None:
    ledger = RejectionLedger(gateway, retry=retry)
    task = make_task()

    second = ledger.record(task, "rita", "Rita", "still dusty", at=T0 + timedelta(minutes=5))
    first = ledger.record(task, "alice", None, "  missing photo  ", at=T0)

    records = ledger.list_rejections(task.id)
    assert [r.id for r in records] == [first.id, second.id]
    assert records[0].reason == "missing photo"
    assert records[1].reviewer_name == "Rita"


def test_same_timestamp_keeps_append_order(gateway: FakeTaskGateway) -> None:
    ledger = RejectionLedger(gateway)
    task = make_task()
    a = ledger.record(task, "rita", None, "one", at=T0)
    b = ledger.record(task, "rita", None, "two", at=T0)
    assert [r.id for r in ledger.list_rejections(task.id)] == [a.id, b.id]


def test_records_are_per_task(gateway: FakeTaskGateway) -> None:
    ledger = RejectionLedger(gateway)
    ledger.record(make_task(task_id="t1"), "rita", None, "a", at=T0)
    ledger.record(make_task(task_id="t2"), "rita", None, "b", at=T0)
    assert [r.reason for r in ledger.list_rejections("t2")] == ["b"]
    assert ledger.list_rejections("nope") == []


def test_empty_reason_is_rejected(gateway: FakeTaskGateway) -> None:
    ledger = RejectionLedger(gateway)
    with pytest.raises(ValidationError):
        ledger.record(make_task(), "rita", None, "   ")
    assert gateway.rejections == []


def test_append_is_retried_without_duplicates(
    gateway: FakeTaskGateway, retry: RetryPolicy, sleeps: list[float]
) -> None:
    ledger = RejectionLedger(gateway, retry=retry)
    gateway.fail("append_rejection", 2)

    ledger.record(make_task(), "rita", None, "try again", at=T0)

    assert len(gateway.rejections) == 1
    assert len(sleeps) == 2


def test_append_gives_up_after_budget(gateway: FakeTaskGateway, retry: RetryPolicy) -> None:
    ledger = RejectionLedger(gateway, retry=retry)
    gateway.fail("append_rejection", 10)
    with pytest.raises(StoreUnavailable):
        ledger.record(make_task(), "rita", None, "nope", at=T0)
    assert gateway.calls.count("append_rejection") == 3


def test_record_with_fixed_id_is_written_once(gateway: FakeTaskGateway) -> None:
    ledger = RejectionLedger(gateway)
    task = make_task()
    first = ledger.record(task, "rita", None, "redo", at=T0, record_id="rej-1")
    ledger.record(task, "rita", None, "redo", at=T0, record_id="rej-1")

    assert first.id == "rej-1"
    assert [r.id for r in ledger.list_rejections(task.id)] == ["rej-1"]
