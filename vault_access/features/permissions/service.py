"""
Administrative operations on permission groups, rules, and assignments.

Every mutation:
- locks the group row (``SELECT ... FOR UPDATE``) so changes to one group
  are serialized,
- writes its audit row in the same transaction (fail-closed),
- commits on success and rolls back on any error.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from vault_access.core.exceptions import Conflict, InvalidRule, NotFound
from vault_access.features.audit.service import AuditContext, diff_changes, record_audit
from vault_access.features.mirror.models import CachedOrg
from vault_access.features.permissions.models import (
    GLOBAL_ORG,
    GroupRoleAssignment,
    GroupUserAssignment,
    PermissionGroup,
    PermissionRule,
)
from vault_access.features.permissions.schemas import (
    GroupCreate,
    GroupUpdate,
    RuleCreate,
    RuleUpdate,
    check_rule_scope,
)
from vault_access.features.users.models import User
from vault_access.utils import get_logger


log = get_logger(__name__)

RESOURCE = "vault_perm_group"


@asynccontextmanager
async def _transaction(db: AsyncSession):
    try:
        yield
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def _lock_group(db: AsyncSession, group_id: str) -> PermissionGroup:
    stmt = select(PermissionGroup).where(PermissionGroup.id == group_id).with_for_update()
    group = (await db.execute(stmt)).scalar_one_or_none()
    if group is None:
        raise NotFound("permission group", group_id)
    return group


async def _get_rule(db: AsyncSession, rule_id: str) -> PermissionRule:
    rule = await db.get(PermissionRule, rule_id)
    if rule is None:
        raise NotFound("permission rule", rule_id)
    return rule


def _group_fields(group: PermissionGroup) -> dict:
    return {"name": group.name, "description": group.description}


# ============================================================================
# Queries
# ============================================================================

@dataclass
class GroupCounts:
    group: PermissionGroup
    rule_count: int
    user_count: int
    role_count: int


async def list_groups(db: AsyncSession) -> List[GroupCounts]:
    """All groups ordered by name, with rule / user / role counts."""
    rule_counts = (
        select(PermissionRule.group_id, func.count().label("n"))
        .group_by(PermissionRule.group_id).subquery()
    )
    user_counts = (
        select(GroupUserAssignment.group_id, func.count().label("n"))
        .group_by(GroupUserAssignment.group_id).subquery()
    )
    role_counts = (
        select(GroupRoleAssignment.group_id, func.count().label("n"))
        .group_by(GroupRoleAssignment.group_id).subquery()
    )
    stmt = (
        select(
            PermissionGroup,
            func.coalesce(rule_counts.c.n, 0),
            func.coalesce(user_counts.c.n, 0),
            func.coalesce(role_counts.c.n, 0),
        )
        .outerjoin(rule_counts, rule_counts.c.group_id == PermissionGroup.id)
        .outerjoin(user_counts, user_counts.c.group_id == PermissionGroup.id)
        .outerjoin(role_counts, role_counts.c.group_id == PermissionGroup.id)
        .order_by(PermissionGroup.name)
    )
    result = await db.execute(stmt)
    return [GroupCounts(group, rules, users, roles) for group, rules, users, roles in result.all()]


async def get_group(db: AsyncSession, group_id: str) -> PermissionGroup:
    """Group with rules, user assignments, and role assignments loaded."""
    stmt = (
        select(PermissionGroup)
        .where(PermissionGroup.id == group_id)
        .options(
            selectinload(PermissionGroup.rules),
            selectinload(PermissionGroup.users),
            selectinload(PermissionGroup.roles),
        )
    )
    group = (await db.execute(stmt)).scalar_one_or_none()
    if group is None:
        raise NotFound("permission group", group_id)
    return group


async def org_names(db: AsyncSession, org_ids: Iterable[str]) -> Dict[str, str]:
    """Cached org names by vault id; unknown ids are left out."""
    org_ids = set(org_ids) - {GLOBAL_ORG}
    if not org_ids:
        return {}
    stmt = select(CachedOrg.vendor_id, CachedOrg.name).where(CachedOrg.vendor_id.in_(org_ids))
    return {vendor_id: name for vendor_id, name in (await db.execute(stmt)).all()}


async def list_rules(db: AsyncSession, group_id: str) -> List[PermissionRule]:
    stmt = (
        select(PermissionRule)
        .where(PermissionRule.group_id == group_id)
        .order_by(PermissionRule.org_id, PermissionRule.section, PermissionRule.category_id)
    )
    return list((await db.execute(stmt)).scalars().all())


# ============================================================================
# Group Mutations
# ============================================================================

async def create_group(db: AsyncSession, ctx: AuditContext, data: GroupCreate) -> PermissionGroup:
    async with _transaction(db):
        group = PermissionGroup(
            name=data.name,
            description=data.description,
            created_by=ctx.actor_id,
        )
        db.add(group)
        await db.flush()
        await record_audit(
            db, ctx, f"{RESOURCE}.created", RESOURCE, group.id,
            details={"changes": diff_changes({}, _group_fields(group))},
        )
    await db.refresh(group)
    return group


async def update_group(
    db: AsyncSession, ctx: AuditContext, group_id: str, data: GroupUpdate
) -> PermissionGroup:
    async with _transaction(db):
        group = await _lock_group(db, group_id)
        before = _group_fields(group)
        for key, value in data.model_dump(exclude_unset=True).items():
            setattr(group, key, value)
        await db.flush()
        await record_audit(
            db, ctx, f"{RESOURCE}.updated", RESOURCE, group.id,
            details={"changes": diff_changes(before, _group_fields(group))},
        )
    await db.refresh(group)
    return group


async def delete_group(db: AsyncSession, ctx: AuditContext, group_id: str) -> None:
    async with _transaction(db):
        group = await _lock_group(db, group_id)
        rules = await list_rules(db, group_id)
        details = {
            "changes": diff_changes(_group_fields(group), {}),
            "rules": [rule.scope_dict() for rule in rules],
        }
        await db.execute(delete(PermissionRule).where(PermissionRule.group_id == group_id))
        await db.execute(delete(GroupUserAssignment).where(GroupUserAssignment.group_id == group_id))
        await db.execute(delete(GroupRoleAssignment).where(GroupRoleAssignment.group_id == group_id))
        await db.delete(group)
        await db.flush()
        await record_audit(db, ctx, f"{RESOURCE}.deleted", RESOURCE, group_id, details=details)


# ============================================================================
# Rule Mutations
# ============================================================================

def _new_rule(group_id: str, data: RuleCreate) -> PermissionRule:
    return PermissionRule(
        group_id=group_id,
        org_id=data.org_id,
        section=data.section,
        category_id=data.category_id,
        asset_id=data.asset_id,
        access_mode=data.access_mode,
    )


async def add_rule(
    db: AsyncSession, ctx: AuditContext, group_id: str, data: RuleCreate
) -> PermissionRule:
    async with _transaction(db):
        await _lock_group(db, group_id)
        rule = _new_rule(group_id, data)
        db.add(rule)
        await db.flush()
        await record_audit(
            db, ctx, "vault_perm_rule.added", RESOURCE, group_id,
            details={"rule_id": rule.id, "changes": diff_changes({}, rule.scope_dict())},
        )
    await db.refresh(rule)
    return rule


async def update_rule(
    db: AsyncSession, ctx: AuditContext, rule_id: str, data: RuleUpdate
) -> PermissionRule:
    async with _transaction(db):
        rule = await _get_rule(db, rule_id)
        await _lock_group(db, rule.group_id)
        before = rule.scope_dict()
        for key, value in data.model_dump(exclude_unset=True).items():
            setattr(rule, key, value)
        error = check_rule_scope(rule.org_id, rule.section, rule.category_id, rule.asset_id)
        if error:
            raise InvalidRule(error)
        await db.flush()
        await record_audit(
            db, ctx, "vault_perm_rule.updated", RESOURCE, rule.group_id,
            details={"rule_id": rule.id, "changes": diff_changes(before, rule.scope_dict())},
        )
    await db.refresh(rule)
    return rule


async def remove_rule(db: AsyncSession, ctx: AuditContext, rule_id: str) -> None:
    async with _transaction(db):
        rule = await _get_rule(db, rule_id)
        group_id = rule.group_id
        await _lock_group(db, group_id)
        details = {"rule_id": rule.id, "changes": diff_changes(rule.scope_dict(), {})}
        await db.delete(rule)
        await db.flush()
        await record_audit(db, ctx, "vault_perm_rule.removed", RESOURCE, group_id, details=details)


async def bulk_set_rules(
    db: AsyncSession, ctx: AuditContext, group_id: str, rules: Sequence[RuleCreate]
) -> List[PermissionRule]:
    """
    Replace every rule of a group in one transaction.

    The delete and the inserts commit together; if any insert fails the
    group keeps its previous rule set untouched.
    """
    async with _transaction(db):
        await _lock_group(db, group_id)
        before = [rule.scope_dict() for rule in await list_rules(db, group_id)]

        await db.execute(delete(PermissionRule).where(PermissionRule.group_id == group_id))
        created = [_new_rule(group_id, data) for data in rules]
        db.add_all(created)
        await db.flush()

        after = [rule.scope_dict() for rule in created]
        await record_audit(
            db, ctx, "vault_perm_rules.bulk_set", RESOURCE, group_id,
            details={
                "rule_count": len(created),
                "added": [r for r in after if r not in before],
                "removed": [r for r in before if r not in after],
            },
        )
    log.info("Replaced rules of group %s: %d -> %d", group_id, len(before), len(created))
    return created


# ============================================================================
# Assignments
# ============================================================================

async def assign_to_user(
    db: AsyncSession, ctx: AuditContext, group_id: str, user_id: str
) -> GroupUserAssignment:
    try:
        async with _transaction(db):
            group = await _lock_group(db, group_id)
            user = await db.get(User, user_id)
            if user is None:
                raise NotFound("user", user_id)
            assignment = GroupUserAssignment(group_id=group_id, user_id=user_id, assigned_by=ctx.actor_id)
            db.add(assignment)
            await db.flush()
            await record_audit(
                db, ctx, f"{RESOURCE}.assigned_user", RESOURCE, group_id,
                details={"user_id": user_id, "user_email": user.email, "group_name": group.name},
            )
    except IntegrityError:
        raise Conflict(f"User {user_id} is already assigned to group {group_id}")
    await db.refresh(assignment)
    return assignment


async def remove_from_user(db: AsyncSession, ctx: AuditContext, group_id: str, user_id: str) -> None:
    async with _transaction(db):
        await _lock_group(db, group_id)
        result = await db.execute(
            delete(GroupUserAssignment).where(
                GroupUserAssignment.group_id == group_id,
                GroupUserAssignment.user_id == user_id,
            )
        )
        if result.rowcount == 0:
            raise NotFound("group user assignment", f"{group_id}:{user_id}")
        await record_audit(
            db, ctx, f"{RESOURCE}.removed_user", RESOURCE, group_id,
            details={"user_id": user_id},
        )


async def assign_to_role(
    db: AsyncSession, ctx: AuditContext, group_id: str, role_id: str
) -> GroupRoleAssignment:
    try:
        async with _transaction(db):
            group = await _lock_group(db, group_id)
            assignment = GroupRoleAssignment(group_id=group_id, role_id=role_id, assigned_by=ctx.actor_id)
            db.add(assignment)
            await db.flush()
            await record_audit(
                db, ctx, f"{RESOURCE}.assigned_role", RESOURCE, group_id,
                details={"role_id": role_id, "group_name": group.name},
            )
    except IntegrityError:
        raise Conflict(f"Role {role_id} is already assigned to group {group_id}")
    await db.refresh(assignment)
    return assignment


async def remove_from_role(db: AsyncSession, ctx: AuditContext, group_id: str, role_id: str) -> None:
    async with _transaction(db):
        await _lock_group(db, group_id)
        result = await db.execute(
            delete(GroupRoleAssignment).where(
                GroupRoleAssignment.group_id == group_id,
                GroupRoleAssignment.role_id == role_id,
            )
        )
        if result.rowcount == 0:
            raise NotFound("group role assignment", f"{group_id}:{role_id}")
        await record_audit(
            db, ctx, f"{RESOURCE}.removed_role", RESOURCE, group_id,
            details={"role_id": role_id},
        )
