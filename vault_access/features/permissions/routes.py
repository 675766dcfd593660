"""
Vault permission group API routes.

Administrative endpoints manage groups, their scoped rules, and their user
and role assignments; every mutation is audited. Query endpoints list
groups, show a group with its rules, test access for a user, and list a
user's effective groups. All endpoints require an admin.
"""
from typing import List
from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core.database.engine import get_db
from vault_access.features.audit.service import AuditContext
from vault_access.features.permissions import service
from vault_access.features.permissions.membership import groups_for_user
from vault_access.features.permissions.resolver import resolve_access
from vault_access.features.permissions.schemas import (
    AccessTestRequest,
    AccessTestResponse,
    AssignRoleToGroup,
    AssignUserToGroup,
    BulkSetRules,
    BulkSetRulesResponse,
    EffectiveGroupResponse,
    GroupCreate,
    GroupDetail,
    GroupResponse,
    GroupSummary,
    GroupUpdate,
    RoleAssignmentResponse,
    RuleCreate,
    RuleResponse,
    RuleUpdate,
    UserAssignmentResponse,
)
from vault_access.features.roles.dependencies import get_role_provider
from vault_access.features.roles.provider import RoleMembershipProvider
from vault_access.features.users.dependencies import get_current_admin_user
from vault_access.features.users.models import User
from vault_access.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _audit_context(request: Request, user: User) -> AuditContext:
    return AuditContext.from_request(request, user.id)


# ============================================================================
# Group Routes
# ============================================================================

@router.get("/groups", response_model=List[GroupSummary])
async def list_groups(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """List all groups with rule, user, and role counts."""
    rows = await service.list_groups(db)
    return [
        GroupSummary.model_validate(row.group).model_copy(
            update={"rule_count": row.rule_count, "user_count": row.user_count, "role_count": row.role_count}
        )
        for row in rows
    ]


@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Create a new permission group."""
    return await service.create_group(db, _audit_context(request, current_user), group)


@router.get("/groups/{group_id}", response_model=GroupDetail)
async def get_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Get a group with its rules (org names resolved from the mirror) and assignments."""
    group = await service.get_group(db, group_id)
    names = await service.org_names(db, (rule.org_id for rule in group.rules))

    detail = GroupDetail.model_validate(group)
    detail.rules = [
        RuleResponse.model_validate(rule).model_copy(update={"org_name": names.get(rule.org_id)})
        for rule in group.rules
    ]
    return detail


@router.put("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    group: GroupUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Rename or re-describe a group."""
    return await service.update_group(db, _audit_context(request, current_user), group_id, group)


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Delete a group together with its rules and assignments."""
    await service.delete_group(db, _audit_context(request, current_user), group_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Rule Routes
# ============================================================================

@router.post("/groups/{group_id}/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def add_rule(
    group_id: str,
    rule: RuleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    return await service.add_rule(db, _audit_context(request, current_user), group_id, rule)


@router.put("/groups/{group_id}/rules", response_model=BulkSetRulesResponse)
async def bulk_set_rules(
    group_id: str,
    body: BulkSetRules,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Replace every rule of the group atomically."""
    created = await service.bulk_set_rules(db, _audit_context(request, current_user), group_id, body.rules)
    return BulkSetRulesResponse(rule_count=len(created))


@router.put("/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: str,
    rule: RuleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    return await service.update_rule(db, _audit_context(request, current_user), rule_id, rule)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_rule(
    rule_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    await service.remove_rule(db, _audit_context(request, current_user), rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Assignment Routes
# ============================================================================

@router.post("/groups/{group_id}/users", response_model=UserAssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_user(
    group_id: str,
    assignment: AssignUserToGroup,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Assign a user to a group. 409 if already assigned."""
    return await service.assign_to_user(
        db, _audit_context(request, current_user), group_id, assignment.user_id
    )


@router.delete("/groups/{group_id}/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user(
    group_id: str,
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    await service.remove_from_user(db, _audit_context(request, current_user), group_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/groups/{group_id}/roles", response_model=RoleAssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_role(
    group_id: str,
    assignment: AssignRoleToGroup,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Assign a role to a group; every holder of the role inherits the group."""
    return await service.assign_to_role(
        db, _audit_context(request, current_user), group_id, assignment.role_id
    )


@router.delete("/groups/{group_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role(
    group_id: str,
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    await service.remove_from_role(db, _audit_context(request, current_user), group_id, role_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Access Check Routes
# ============================================================================

@router.post("/test-access", response_model=AccessTestResponse)
async def test_access(
    body: AccessTestRequest,
    db: AsyncSession = Depends(get_db),
    roles: RoleMembershipProvider = Depends(get_role_provider),
    current_user: User = Depends(get_current_admin_user),
):
    """
    Evaluate a scope for a user and report which rule decided.

    Useful to debug why a user can or cannot see a record.
    """
    decision = await resolve_access(
        db, roles, body.user_id, body.org_id,
        section=body.section, category_id=body.category_id, asset_id=body.asset_id,
    )
    groups = await groups_for_user(db, roles, body.user_id)
    return AccessTestResponse(
        allowed=decision.allowed,
        mode=decision.mode,
        rule_id=decision.rule_id,
        group_id=decision.group_id,
        group_name=decision.group_name,
        specificity=int(decision.specificity) if decision.specificity is not None else None,
        user_groups=[EffectiveGroupResponse.model_validate(g) for g in groups],
    )


@router.get("/users/{user_id}/groups", response_model=List[EffectiveGroupResponse])
async def get_user_groups(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    roles: RoleMembershipProvider = Depends(get_role_provider),
    current_user: User = Depends(get_current_admin_user),
):
    """Effective groups of a user, direct and through roles."""
    return [EffectiveGroupResponse.model_validate(g) for g in await groups_for_user(db, roles, user_id)]
