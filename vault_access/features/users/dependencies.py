"""
FastAPI dependencies for authentication and authorization.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core.database.engine import get_db
from vault_access.features.users.models import User
from vault_access.features.users.auth import get_appwrite_user, token_subject
from vault_access.utils import get_logger, utcnow


log = get_logger(__name__)
security = HTTPBearer()


async def _local_user(db: AsyncSession, appwrite_id: str) -> User:
    """The local user row for an Appwrite account, created on first sight."""
    user = await db.scalar(select(User).where(User.appwrite_id == appwrite_id))
    if user is None:
        account = await get_appwrite_user(appwrite_id)
        user = User(
            appwrite_id=appwrite_id,
            email=account.get("email", ""),
            name=account.get("name", "Unknown"),
        )
        db.add(user)
        log.info("Provisioned local user for Appwrite account %s", appwrite_id)
    user.last_login_at = utcnow()
    await db.commit()
    await db.refresh(user)
    return user


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Resolve the bearer token to a local, active user.

    Permission groups are assigned to these local ids, so the row is
    created the first time an Appwrite account calls the API.
    """
    user = await _local_user(db, token_subject(credentials.credentials))
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )
    return user


async def get_current_admin_user(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """Every permission-group, sync and mirror-browsing endpoint depends on this."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user


def get_authorization_header(request: Request) -> str:
    """Rate limit key: the caller's bearer token, or the client address."""
    auth = request.headers.get("Authorization")
    if auth:
        return auth
    return request.client.host if request.client else "anonymous"
