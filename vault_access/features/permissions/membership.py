"""
Effective group resolution.

A user's effective groups are the groups assigned to them directly plus the
groups assigned to any role they currently hold. Role membership comes from
an injected ``RoleMembershipProvider``.
"""
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.features.permissions.models import (
    PermissionGroup,
    GroupUserAssignment,
    GroupRoleAssignment,
)
from vault_access.features.roles.provider import RoleMembershipProvider


@dataclass(frozen=True)
class EffectiveGroup:
    group_id: str
    group_name: str
    assignment_type: Literal["direct", "role"]
    role_id: Optional[str] = None


async def groups_for_user(
    db: AsyncSession,
    roles: RoleMembershipProvider,
    user_id: str,
) -> List[EffectiveGroup]:
    """
    Return every group that applies to the user, each reported once.

    A group reachable both directly and through a role is reported as
    ``direct``; reachable through several roles, the first role id in sort
    order is reported.
    """
    found: Dict[str, EffectiveGroup] = {}

    stmt = (
        select(PermissionGroup.id, PermissionGroup.name)
        .join(GroupUserAssignment, GroupUserAssignment.group_id == PermissionGroup.id)
        .where(GroupUserAssignment.user_id == user_id)
    )
    for group_id, group_name in (await db.execute(stmt)).all():
        found[group_id] = EffectiveGroup(group_id, group_name, "direct")

    role_ids = await roles.roles_for_user(user_id)
    if role_ids:
        stmt = (
            select(PermissionGroup.id, PermissionGroup.name, GroupRoleAssignment.role_id)
            .join(GroupRoleAssignment, GroupRoleAssignment.group_id == PermissionGroup.id)
            .where(GroupRoleAssignment.role_id.in_(role_ids))
            .order_by(GroupRoleAssignment.role_id)
        )
        for group_id, group_name, role_id in (await db.execute(stmt)).all():
            if group_id not in found:
                found[group_id] = EffectiveGroup(group_id, group_name, "role", role_id)

    return sorted(found.values(), key=lambda g: (g.group_name, g.group_id))


async def group_ids_for_user(
    db: AsyncSession,
    roles: RoleMembershipProvider,
    user_id: str,
) -> Set[str]:
    return {group.group_id for group in await groups_for_user(db, roles, user_id)}
