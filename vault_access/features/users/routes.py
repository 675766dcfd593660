"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core.database.engine import get_db
from vault_access.features.audit.service import AuditContext, record_audit
from vault_access.features.mirror.store import cached_org_ids
from vault_access.features.permissions.resolver import allowed_org_ids
from vault_access.features.roles.dependencies import get_role_provider
from vault_access.features.roles.provider import RoleMembershipProvider
from vault_access.features.users.models import User
from vault_access.features.users.schemas import UserResponse, UserUpdate, UserVaultAccess
from vault_access.features.users.dependencies import get_current_user, get_current_admin_user


router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    return user


@router.patch("/me", response_model=UserResponse)
async def update_current_user_profile(
    update_data: UserUpdate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    if update_data.name is not None:
        user.name = update_data.name

    await db.commit()
    await db.refresh(user)
    return user


@router.get("/me/vault-orgs", response_model=UserVaultAccess)
async def get_my_vault_orgs(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    roles: Annotated[RoleMembershipProvider, Depends(get_role_provider)],
):
    """
    Organizations where the user holds a non-denied org-level rule.

    A global rule expands to every organization in the mirror.
    """
    org_ids = await allowed_org_ids(db, roles, user.id, known_org_ids=lambda: cached_org_ids(db))
    return UserVaultAccess(user_id=user.id, org_ids=sorted(org_ids))


@router.patch("/{user_id}/admin", response_model=UserResponse)
async def toggle_admin_status(
    user_id: str,
    request: Request,
    admin: Annotated[User, Depends(get_current_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Grant or revoke admin (and with it, permission-group management).

    The change is audited in the same transaction.
    """
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot modify your own admin status"
        )

    user.is_admin = not user.is_admin
    await record_audit(
        db, AuditContext.from_request(request, admin.id),
        "user.admin_granted" if user.is_admin else "user.admin_revoked",
        "user", user.id,
        details={"email": user.email},
    )
    await db.commit()
    await db.refresh(user)
    return user
