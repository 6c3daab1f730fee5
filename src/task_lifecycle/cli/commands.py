# src/task_lifecycle/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from datetime import datetime
from typing import cast

from ..core.errors import TaskLifecycleError, ValidationError
from ..core.state import AppState
from ..tasks.recurrence import (
    EndCondition,
    Frequency,
    RecurrenceRule,
    default_end_condition,
    describe_rule,
    parse_weekdays,
    preview_occurrences,
)
from ..tasks.permissions import resolve_role
from ..tasks.status_machine import available_actions
from ..tasks.task_models import NewTask, RejectionRecord, Task, TaskAction, as_utc

CommandEmitter = Callable[[str], None]
CommandHandler3 = Callable[[AppState, list[str], str | None], str]
CommandHandler4 = Callable[[AppState, list[str], str | None, CommandEmitter | None], str]
CommandHandler = CommandHandler3 | CommandHandler4

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /create, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        user_id: str | None = None,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 4

        try:
            if nparams >= 4:
                h4 = cast(CommandHandler4, handler)
                return h4(state, args, user_id, emit)
            h3 = cast(CommandHandler3, handler)
            return h3(state, args, user_id)
        except TaskLifecycleError as e:
            logger.info("/%s refused: %s", name, e)
            return f"{type(e).__name__}: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- parsing / formatting helpers ----


def _split_options(args: list[str]) -> tuple[dict[str, str], list[str]]:
    """Split "key=value" tokens from free words."""
    opts: dict[str, str] = {}
    words: list[str] = []
    for token in args:
        key, sep, value = token.partition("=")
        if sep and key and not words:
            opts[key.lower()] = value
        else:
            words.append(token)
    return opts, words


def _parse_date(raw: str) -> datetime:
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        raise ValidationError(f"Invalid date {raw!r} (use YYYY-MM-DD or ISO 8601)") from None


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise ValidationError("No acting user. Use /as <user_id> first.")
    return user_id


def _new_task(opts: dict[str, str], words: list[str], user_id: str) -> NewTask:
    title = " ".join(words).strip()
    if not title:
        raise ValidationError("A title is required after the options.")
    return NewTask(
        title=title,
        creator_id=user_id,
        assignee_id=opts.get("assignee", user_id),
        assignee_name=opts.get("assignee_name"),
        reviewer_id=opts.get("reviewer"),
        reviewer_name=opts.get("reviewer_name"),
        description=opts.get("description", ""),
        priority=opts.get("priority", "medium"),
        category=opts.get("category", "other"),
        tags=[t for t in opts.get("tags", "").split(",") if t],
        group_id=opts.get("group"),
        due_date=_parse_date(opts["due"]) if "due" in opts else None,
    )


def format_task(task: Task) -> str:
    a = task.assignment
    due = f" due={task.due_date:%Y-%m-%d}" if task.due_date else ""
    series = f" series={task.series_id}#{task.occurrence_index}" if task.series_id else ""
    reviewer = f" reviewer={a.reviewer_id}" if a.reviewer_id else ""
    return (
        f"[{task.status.value}] {task.id} {task.title!r} "
        f"assignee={a.assignee_id}{reviewer}{due}{series}"
    )


def format_rejection(rec: RejectionRecord) -> str:
    who = rec.reviewer_name or rec.reviewer_id
    return f"{rec.timestamp:%Y-%m-%d %H:%M} {who}: {rec.reason}"


# ---- handlers ----


def cmd_help(state: AppState, args: list[str], user_id: str | None) -> str:
    return registry.build_help()


def cmd_whoami(state: AppState, args: list[str], user_id: str | None) -> str:
    return f"Acting as: {user_id or '(nobody)'}"


def cmd_as(state: AppState, args: list[str], user_id: str | None) -> str:
    if not args:
        return "Usage: /as <user_id>"
    state.current_user = args[0]
    return f"Now acting as {args[0]}."


def cmd_member(state: AppState, args: list[str], user_id: str | None) -> str:
    """
    /member <group> <user> [admin|member]
    """
    if len(args) < 2:
        return "Usage: /member <group> <user> [admin|member]"
    role = args[2] if len(args) > 2 else "member"
    m = state.memberships.upsert_membership(args[0], args[1], role)
    return f"{m.user_id} is {m.role.value} of {m.group_id}."


def cmd_members(state: AppState, args: list[str], user_id: str | None) -> str:
    if not args:
        return "Usage: /members <group>"
    members = state.memberships.list_members(args[0])
    if not members:
        return f"Group {args[0]} has no members."
    return "\n".join(f"{m.user_id} ({m.role.value})" for m in members)


def cmd_create(state: AppState, args: list[str], user_id: str | None) -> str:
    """
    /create [assignee=..] [reviewer=..] [group=..] [due=YYYY-MM-DD] [priority=..] <title>
    """
    actor = _require_user(user_id)
    opts, words = _split_options(args)
    task = state.lifecycle.create_task(_new_task(opts, words, actor))
    return f"Created {format_task(task)}"


def cmd_repeat(
    state: AppState,
    args: list[str],
    user_id: str | None,
    emit: CommandEmitter | None = None,
) -> str:
    """
    /repeat <frequency> due=YYYY-MM-DD [every=N] [days=mon,wed] [count=N|until=YYYY-MM-DD|forever]
            [assignee=..] [reviewer=..] [group=..] <title>
    """
    actor = _require_user(user_id)
    if not args:
        return "Usage: /repeat <daily|weekly|monthly|quarterly|half_yearly|yearly> due=YYYY-MM-DD ... <title>"

    frequency = args[0].lower()
    if frequency not in {f.value for f in Frequency}:
        raise ValidationError(f"Unknown frequency {args[0]!r}")
    opts, words = _split_options(args[1:])
    if "due" not in opts:
        raise ValidationError("Recurring tasks need an anchor due date (due=YYYY-MM-DD).")

    if "count" in opts:
        end = EndCondition.after_count(int(opts["count"]) if opts["count"].isdigit() else 0)
    elif "until" in opts:
        end = EndCondition.until_date(_parse_date(opts["until"]))
    elif "forever" in (w.lower() for w in words[:1]):
        words = words[1:]
        end = EndCondition.never()
    else:
        end = default_end_condition(frequency)

    every = opts.get("every", "1")
    rule = RecurrenceRule(
        frequency=frequency,
        anchor_due_date=_parse_date(opts["due"]),
        interval=int(every) if every.isdigit() else 0,
        days_of_week=parse_weekdays(opts.get("days", "").split(",")),
        end=end,
    )
    task = state.lifecycle.create_recurring_task(_new_task(opts, words, actor), rule)

    if emit is not None:
        upcoming = ", ".join(f"{d:%Y-%m-%d}" for d in preview_occurrences(rule, limit=5))
        emit(f"Upcoming: {upcoming}")
    return f"Created {format_task(task)}\n  {describe_rule(rule)}"


def _transition_handler(action: TaskAction) -> CommandHandler4:
    def handler(
        state: AppState,
        args: list[str],
        user_id: str | None,
        emit: CommandEmitter | None = None,
    ) -> str:
        actor = _require_user(user_id)
        if not args:
            return f"Usage: /{action.value} <task_id>"
        task = state.lifecycle.apply_transition(args[0], actor, action)

        if task.series_id and action == TaskAction.APPROVE and emit is not None:
            nxt = state.task_store.get_occurrence(task.series_id, (task.occurrence_index or 0) + 1)
            emit(f"Next occurrence: {format_task(nxt)}" if nxt else "Series finished.")
        return format_task(task)

    handler.__name__ = f"cmd_{action.value}"
    return handler


def cmd_reject(state: AppState, args: list[str], user_id: str | None) -> str:
    actor = _require_user(user_id)
    if len(args) < 2:
        return "Usage: /reject <task_id> <reason...>"
    task = state.lifecycle.apply_transition(args[0], actor, TaskAction.REJECT, {"reason": " ".join(args[1:])})
    return format_task(task)


def cmd_show(state: AppState, args: list[str], user_id: str | None) -> str:
    if not args:
        return "Usage: /show <task_id>"
    task = state.lifecycle.get_task(args[0])
    lines = [format_task(task)]
    if task.description:
        lines.append(f"  {task.description}")
    if user_id:
        membership = state.memberships.get_membership(task.group_id, user_id) if task.group_id else None
        actions = available_actions(task, resolve_role(task, user_id, membership))
        lines.append(f"  You can: {', '.join(a.value for a in actions) or 'nothing'}")
    return "\n".join(lines)


def cmd_list(state: AppState, args: list[str], user_id: str | None) -> str:
    if not args:
        return "Usage: /list <group_id>"
    tasks = state.lifecycle.list_tasks_for_group(args[0])
    if not tasks:
        return f"No tasks in group {args[0]}."
    return "\n".join(format_task(t) for t in tasks)


def cmd_rejections(state: AppState, args: list[str], user_id: str | None) -> str:
    if not args:
        return "Usage: /rejections <task_id>"
    records = state.lifecycle.list_rejections(args[0])
    if not records:
        return "No rejections."
    return "\n".join(format_rejection(r) for r in records)


def cmd_cancel_series(state: AppState, args: list[str], user_id: str | None) -> str:
    actor = _require_user(user_id)
    if not args:
        return "Usage: /cancel-series <series_id>"
    series = state.lifecycle.cancel_series(args[0], actor)
    return f"Series {series.series_id} cancelled; existing occurrences are kept."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("whoami", cmd_whoami, help_text="Show the acting user.")
registry.register("as", cmd_as, help_text="Act as another user: /as <user_id>.")
registry.register("member", cmd_member, help_text="Set a group role: /member <group> <user> [admin|member].")
registry.register("members", cmd_members, help_text="List the members of a group: /members <group>.")
registry.register("create", cmd_create, help_text="Create a task: /create assignee=.. [reviewer=..] [group=..] <title>.")
registry.register("repeat", cmd_repeat, help_text="Create a recurring task: /repeat <frequency> due=.. <title>.")
for _action in (TaskAction.START, TaskAction.SUBMIT, TaskAction.APPROVE, TaskAction.RESUME):
    registry.register(_action.value, _transition_handler(_action), help_text=f"{_action.value.capitalize()} a task.")
registry.register("reject", cmd_reject, help_text="Reject a submitted task: /reject <task_id> <reason>.")
registry.register("show", cmd_show, help_text="Show a task and what you can do with it.")
registry.register("list", cmd_list, help_text="List tasks of a group: /list <group_id>.")
registry.register("rejections", cmd_rejections, help_text="Show the rejection history of a task.")
registry.register("cancel-series", cmd_cancel_series, help_text="Stop a recurring series.")
