from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core.database.engine import get_db
from vault_access.features.roles.provider import RoleMembershipProvider, SqlRoleMembershipProvider


async def get_role_provider(db: AsyncSession = Depends(get_db)) -> RoleMembershipProvider:
    """Role provider bound to the request session; override in tests or to plug in another RBAC source."""
    return SqlRoleMembershipProvider(db)
