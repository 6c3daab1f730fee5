# src/task_lifecycle/tasks/permissions.py

from __future__ import annotations

from dataclasses import dataclass

from ..core.ports import MembershipDirectory
from .task_models import GroupMembership, GroupRole, Task


@dataclass(frozen=True, slots=True)
class RoleSet:
    """
    Capabilities of one user on one task.

    Roles are not exclusive: an admin who is also the assignee holds both.
    """

    is_assignee: bool = False
    is_reviewer: bool = False
    is_admin: bool = False

    @property
    def can_review(self) -> bool:
        return self.is_reviewer or self.is_admin


@dataclass(frozen=True, slots=True)
class Actor:
    user_id: str
    roles: RoleSet
    name: str | None = None


def resolve_role(
    task: Task,
    user_id: str,
    memberships: MembershipDirectory | GroupMembership | None,
) -> RoleSet:
    """
    Map (task, user, group memberships) to a RoleSet.

    memberships may be the directory itself or an already fetched membership
    (or None for a task outside any group).
    """
    assignment = task.assignment
    is_assignee = bool(user_id) and assignment.assignee_id == user_id
    is_reviewer = bool(user_id) and assignment.reviewer_id is not None and assignment.reviewer_id == user_id

    is_admin = False
    if task.group_id and user_id and memberships is not None:
        if isinstance(memberships, GroupMembership):
            membership: GroupMembership | None = memberships
        else:
            membership = memberships.get_membership(task.group_id, user_id)
        is_admin = (
            membership is not None
            and membership.group_id == task.group_id
            and membership.user_id == user_id
            and membership.role == GroupRole.ADMIN
        )

    return RoleSet(is_assignee=is_assignee, is_reviewer=is_reviewer, is_admin=is_admin)


def resolve_actor(
    task: Task,
    user_id: str,
    memberships: MembershipDirectory | GroupMembership | None,
    *,
    fallback_name: str | None = None,
) -> Actor:
    """Resolve roles and the display name the actor is known by on this task."""
    roles = resolve_role(task, user_id, memberships)
    name = None
    if roles.is_reviewer:
        name = task.assignment.reviewer_name
    elif roles.is_assignee:
        name = task.assignment.assignee_name
    return Actor(user_id=user_id, roles=roles, name=name or fallback_name)
