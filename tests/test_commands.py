# tests/test_commands.py

from __future__ import annotations

from task_lifecycle.cli.commands import CommandRegistry, registry
from task_lifecycle.core.errors import Unauthorized
from task_lifecycle.core.state import AppState


def test_command_registry_routes_3_and_4_params(state: AppState) -> None:
    reg = CommandRegistry()
    called = {"h3": 0, "h4": 0}

    def h3(state, args, user_id):
        called["h3"] += 1
        return "h3"

    def h4(state, args, user_id, emit):
        called["h4"] += 1
        if emit is not None:
            emit("note")
        return "h4"

    reg.register("a", h3, "a")
    reg.register("b", h4, "b")

    assert reg.handle(state, "/a x", user_id="u") == "h3"
    assert reg.handle(state, "/b y", user_id="u", emit=lambda _: None) == "h4"
    assert called == {"h3": 1, "h4": 1}


def test_command_registry_unknown_and_non_command(state: AppState) -> None:
    reg = CommandRegistry()
    assert reg.handle(state, "hello") is None
    assert "Unknown command" in (reg.handle(state, "/nope") or "")
    assert "Empty command" in (reg.handle(state, "/") or "")


def test_command_registry_renders_lifecycle_errors(state: AppState) -> None:
    reg = CommandRegistry()

    def refuse(state, args, user_id):
        raise Unauthorized("Only the assignee may start this task", task_id="t1", action="start", actor_id=user_id)

    reg.register("go", refuse, "go")
    assert reg.handle(state, "/go", user_id="rita") == (
        "Unauthorized: Only the assignee may start this task (task=t1 action=start actor=rita)"
    )


def test_console_flow_through_commands(state: AppState) -> None:
    notes: list[str] = []

    def run(line: str, user: str | None) -> str:
        return registry.handle(state, line, user, emit=notes.append) or ""

    assert "No acting user" in run("/create assignee=bob kitchen", None)
    assert run("/as alice", None) == "Now acting as alice."
    assert state.current_user == "alice"

    run("/member g1 alice admin", "alice")
    run("/member g1 bob", "alice")
    run("/member g1 rita", "alice")
    assert sorted(run("/members g1", "alice").splitlines()) == ["alice (admin)", "bob (member)", "rita (member)"]
    assert run("/members g9", "alice") == "Group g9 has no members."
    assert run("/create assignee=bob reviewer=rita group=g1 Clean the kitchen", "alice").startswith("Created [assigned]")

    (task,) = state.lifecycle.list_tasks_for_group("g1")
    assert task.title == "Clean the kitchen"

    assert run(f"/start {task.id}", "bob").startswith("[inProgress]")
    assert run(f"/submit {task.id}", "bob").startswith("[pendingReview]")
    assert run(f"/approve {task.id}", "bob").startswith("Unauthorized:")
    assert run(f"/reject {task.id} missing photo", "rita").startswith("[reopened]")
    assert "missing photo" in run(f"/rejections {task.id}", "rita")
    assert "You can: resume" in run(f"/show {task.id}", "bob")


def test_repeat_command_creates_series(state: AppState) -> None:
    notes: list[str] = []
    state.memberships.upsert_membership("g1", "alice", "admin")

    reply = registry.handle(
        state,
        "/repeat weekly due=2025-01-07 days=mon,wed count=4 assignee=bob group=g1 Water plants",
        "alice",
        emit=notes.append,
    )

    assert reply is not None and reply.startswith("Created [assigned]")
    assert "Repeats weekly on Mon, Wed, 4 times" in reply
    assert notes == ["Upcoming: 2025-01-07, 2025-01-08, 2025-01-13, 2025-01-15"]

    (task,) = state.lifecycle.list_tasks_for_group("g1")
    assert task.occurrence_index == 0
    assert "cancelled" in (registry.handle(state, f"/cancel-series {task.series_id}", "alice") or "")


def test_help_lists_commands(state: AppState) -> None:
    text = registry.handle(state, "/help") or ""
    for name in ("/create", "/repeat", "/approve", "/reject", "/cancel-series"):
        assert name in text
