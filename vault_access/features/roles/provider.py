"""
Role membership providers.

The group membership resolver depends on the ``RoleMembershipProvider``
protocol only; which implementation backs it is decided by the caller.
"""
from typing import Iterable, Mapping, Protocol, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.features.roles.models import user_roles


class RoleMembershipProvider(Protocol):
    async def roles_for_user(self, user_id: str) -> Set[str]:
        """Return the ids of every role the user currently holds."""
        ...


class SqlRoleMembershipProvider:
    """Reads role membership from the host application's ``user_roles`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def roles_for_user(self, user_id: str) -> Set[str]:
        result = await self.db.execute(
            select(user_roles.c.role_id).where(user_roles.c.user_id == user_id)
        )
        return set(result.scalars().all())


class StaticRoleMembershipProvider:
    """Fixed user -> roles mapping, for scripts and tests."""

    def __init__(self, memberships: Mapping[str, Iterable[str]] | None = None):
        self._memberships = {user: set(roles) for user, roles in (memberships or {}).items()}

    def grant(self, user_id: str, role_id: str) -> None:
        self._memberships.setdefault(user_id, set()).add(role_id)

    def revoke(self, user_id: str, role_id: str) -> None:
        self._memberships.get(user_id, set()).discard(role_id)

    async def roles_for_user(self, user_id: str) -> Set[str]:
        return set(self._memberships.get(user_id, ()))
