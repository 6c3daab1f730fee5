# src/task_lifecycle/tasks/recurrence.py

from __future__ import annotations

"""
Recurring tasks.

Two layers:
- pure date arithmetic over a RecurrenceRule (next_occurrence, preview_occurrences,
  describe_rule),
- RecurrenceEngine, which materializes occurrences lazily through the gateway:
  occurrence 0 when the series is created, occurrence N+1 only once occurrence N
  has been reviewed.

Duplicate triggers are safe: the gateway enforces uniqueness of
(series_id, occurrence_index) and the engine treats that conflict as a no-op.
"""

import calendar
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from ..core.errors import DuplicateOccurrence, InvalidTransition, ValidationError
from ..core.ports import TaskGateway
from ..core.retry import NO_RETRY, RetryPolicy
from .task_models import NewTask, SeriesRecord, Task, TaskStatus, as_utc, utc_now

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class Frequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half_yearly"
    YEARLY = "yearly"


# Month-based frequencies: months per interval step.
_MONTH_STEPS: dict[Frequency, int] = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.HALF_YEARLY: 6,
    Frequency.YEARLY: 12,
}

_UNIT_NAMES: dict[Frequency, str] = {
    Frequency.DAILY: "day",
    Frequency.WEEKLY: "week",
    Frequency.MONTHLY: "month",
    Frequency.QUARTERLY: "quarter",
    Frequency.HALF_YEARLY: "half-year",
    Frequency.YEARLY: "year",
}

_ADVERBS: dict[Frequency, str] = {
    Frequency.DAILY: "daily",
    Frequency.WEEKLY: "weekly",
    Frequency.MONTHLY: "monthly",
    Frequency.QUARTERLY: "quarterly",
    Frequency.HALF_YEARLY: "every half-year",
    Frequency.YEARLY: "yearly",
}


class EndType(StrEnum):
    NEVER = "never"
    AFTER_COUNT = "after_count"
    UNTIL_DATE = "until_date"


@dataclass(frozen=True, slots=True)
class EndCondition:
    kind: EndType = EndType.NEVER
    count: int | None = None
    until: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EndType(self.kind))
        if self.kind == EndType.AFTER_COUNT:
            if self.count is None or int(self.count) < 1:
                raise ValidationError("after_count needs a positive occurrence count")
            object.__setattr__(self, "count", int(self.count))
        if self.kind == EndType.UNTIL_DATE:
            if self.until is None:
                raise ValidationError("until_date needs an end date")
            object.__setattr__(self, "until", as_utc(self.until))

    @classmethod
    def never(cls) -> EndCondition:
        return cls(EndType.NEVER)

    @classmethod
    def after_count(cls, n: int) -> EndCondition:
        return cls(EndType.AFTER_COUNT, count=n)

    @classmethod
    def until_date(cls, d: datetime) -> EndCondition:
        return cls(EndType.UNTIL_DATE, until=d)


DEFAULT_END_COUNTS: dict[Frequency, int] = {
    Frequency.DAILY: 30,
    Frequency.WEEKLY: 12,
    Frequency.MONTHLY: 12,
    Frequency.QUARTERLY: 4,
    Frequency.HALF_YEARLY: 2,
    Frequency.YEARLY: 1,
}


def default_end_condition(frequency: Frequency | str) -> EndCondition:
    return EndCondition.after_count(DEFAULT_END_COUNTS[Frequency(frequency)])


@dataclass(frozen=True, slots=True)
class RecurrenceRule:
    frequency: Frequency
    anchor_due_date: datetime
    interval: int = 1
    # Python weekday numbers: 0 = Monday ... 6 = Sunday. Weekly rules only.
    days_of_week: frozenset[int] = frozenset()
    end: EndCondition = EndCondition()

    def __post_init__(self) -> None:
        try:
            freq = Frequency(self.frequency)
        except ValueError:
            raise ValidationError(f"Unknown frequency {self.frequency!r}") from None
        object.__setattr__(self, "frequency", freq)
        object.__setattr__(self, "anchor_due_date", as_utc(self.anchor_due_date))

        if isinstance(self.interval, bool) or int(self.interval) < 1:
            raise ValidationError("interval must be a positive integer")
        object.__setattr__(self, "interval", int(self.interval))

        days = frozenset(int(d) for d in self.days_of_week)
        if any(d < 0 or d > 6 for d in days):
            raise ValidationError("days_of_week must be weekday numbers 0..6")
        if days and freq != Frequency.WEEKLY:
            raise ValidationError("days_of_week applies to weekly rules only")
        object.__setattr__(self, "days_of_week", days)


def parse_weekdays(names: Iterable[str]) -> frozenset[int]:
    """Parse "mon", "Wednesday", "3", ... into weekday numbers."""
    out: set[int] = set()
    for raw in names:
        token = (raw or "").strip().lower()
        if not token:
            continue
        if token.isdigit() and 0 <= int(token) <= 6:
            out.add(int(token))
            continue
        for i, name in enumerate(WEEKDAY_NAMES):
            if token.startswith(name.lower()):
                out.add(i)
                break
        else:
            raise ValidationError(f"Unknown weekday {raw!r}")
    return frozenset(out)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the last valid day of the target month."""
    total = value.year * 12 + (value.month - 1) + months
    year, month0 = divmod(total, 12)
    month = month0 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def _step(rule: RecurrenceRule, from_date: datetime) -> datetime:
    freq = rule.frequency

    if freq == Frequency.DAILY:
        return from_date + timedelta(days=rule.interval)

    if freq == Frequency.WEEKLY:
        if rule.days_of_week:
            for offset in range(1, 8):
                candidate = from_date + timedelta(days=offset)
                if candidate.weekday() in rule.days_of_week:
                    return candidate
        return from_date + timedelta(weeks=rule.interval)

    months = _MONTH_STEPS[freq] * rule.interval
    return add_months(from_date, months)


def next_occurrence(rule: RecurrenceRule, from_date: datetime, occurrence_index: int) -> datetime | None:
    """
    Due date of occurrence `occurrence_index`, following the occurrence due at from_date.

    Returns None when the series has ended:
    - after_count(n): occurrence_index >= n
    - until_date(d): the computed date is later than d
    """
    if occurrence_index < 0:
        raise ValidationError("occurrence_index must be >= 0")

    end = rule.end
    if end.kind == EndType.AFTER_COUNT and end.count is not None and occurrence_index >= end.count:
        return None

    nxt = _step(rule, as_utc(from_date))

    if end.kind == EndType.UNTIL_DATE and end.until is not None and nxt > end.until:
        return None
    return nxt


def preview_occurrences(rule: RecurrenceRule, limit: int = 5) -> list[datetime]:
    """Upcoming due dates of a series, anchor first, honoring the end condition."""
    if limit <= 0:
        return []
    out = [rule.anchor_due_date]
    current = rule.anchor_due_date
    while len(out) < limit:
        nxt = next_occurrence(rule, current, len(out))
        if nxt is None:
            break
        out.append(nxt)
        current = nxt
    return out


def describe_rule(rule: RecurrenceRule) -> str:
    if rule.interval == 1:
        text = f"Repeats {_ADVERBS[rule.frequency]}"
    else:
        text = f"Repeats every {rule.interval} {_UNIT_NAMES[rule.frequency]}s"

    if rule.days_of_week:
        text += " on " + ", ".join(WEEKDAY_NAMES[d] for d in sorted(rule.days_of_week))

    end = rule.end
    if end.kind == EndType.NEVER:
        text += " indefinitely"
    elif end.kind == EndType.AFTER_COUNT:
        text += ", once" if end.count == 1 else f", {end.count} times"
    elif end.until is not None:
        text += f", until {end.until:%b} {end.until.day}, {end.until.year}"
    return text


class RecurrenceEngine:
    """Materializes series occurrences through the gateway."""

    def __init__(
        self,
        gateway: TaskGateway,
        *,
        retry: RetryPolicy = NO_RETRY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gateway = gateway
        self._retry = retry
        self._clock = clock

    def materialize_series(self, template: NewTask, rule: RecurrenceRule) -> Task:
        """Create the series record and its occurrence 0 (due at the rule's anchor)."""
        now = self._clock()
        series = SeriesRecord(
            series_id=uuid.uuid4().hex,
            rule=rule,
            created_by=template.creator_id,
            created_at=now,
            group_id=template.group_id,
        )
        self._retry.call(self._gateway.create_series, series)

        first = template.build(
            task_id=uuid.uuid4().hex,
            now=now,
            due_date=rule.anchor_due_date,
            series_id=series.series_id,
            occurrence_index=0,
        )
        task = self._create_occurrence(first)
        logger.info(
            "Series created series_id=%s rule=%r first_task=%s",
            series.series_id,
            describe_rule(rule),
            task.id,
        )
        return task

    def advance_series(self, prior_task: Task) -> Task | None:
        """
        Create the occurrence that follows a reviewed series member.

        Returns the new (or already existing) occurrence, or None when the series
        has ended or was cancelled.
        """
        series_id = prior_task.series_id
        if not series_id:
            return None
        if prior_task.status != TaskStatus.REVIEWED:
            raise InvalidTransition(
                "A series advances only after its current occurrence is reviewed",
                task_id=prior_task.id,
                action="advance_series",
            )

        series = self._retry.call(self._gateway.get_series, series_id)
        if series is None:
            logger.warning("Series %s not found; not advancing from task %s", series_id, prior_task.id)
            return None
        if not series.active:
            logger.info("Series %s is cancelled; no further occurrences", series_id)
            return None

        next_index = (prior_task.occurrence_index or 0) + 1
        base = prior_task.due_date or series.rule.anchor_due_date
        due = next_occurrence(series.rule, base, next_index)
        if due is None:
            logger.info("Series %s exhausted after occurrence %s", series_id, next_index - 1)
            return None

        existing = self._retry.call(self._gateway.get_occurrence, series_id, next_index)
        if existing is not None:
            logger.info("Occurrence %s of series %s already exists (task %s)", next_index, series_id, existing.id)
            return existing

        now = self._clock()
        nxt = replace(
            prior_task,
            id=uuid.uuid4().hex,
            status=TaskStatus.ASSIGNED,
            assignment=replace(prior_task.assignment, assigned_at=now, last_status_change_at=now),
            due_date=due,
            occurrence_index=next_index,
            created_at=now,
            updated_at=now,
            version=0,
        )
        return self._create_occurrence(nxt)

    def _create_occurrence(self, task: Task) -> Task:
        try:
            created = self._retry.call(self._gateway.create, task)
        except DuplicateOccurrence as e:
            existing = self._retry.call(self._gateway.get_occurrence, e.series_id, e.occurrence_index)
            if existing is None:
                raise
            logger.info(
                "Duplicate trigger for occurrence %s of series %s; keeping task %s",
                e.occurrence_index,
                e.series_id,
                existing.id,
            )
            return existing

        logger.info(
            "Occurrence materialized task_id=%s series_id=%s index=%s due=%s",
            created.id,
            created.series_id,
            created.occurrence_index,
            created.due_date,
        )
        return created
