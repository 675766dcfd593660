"""
Seed script to populate default roles and starter vault permission groups.

Run this script after database initialization to create:
- Default host roles
- One permission group per role, each with a global rule
- Role -> group assignments

Groups are created through the audited service layer, so the seed shows up
in the audit log as a system action.

Usage:
    uv run python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core.database.engine import AsyncSessionLocal, init_db
from vault_access.features.audit.service import SYSTEM
from vault_access.features.permissions import service
from vault_access.features.permissions.models import GLOBAL_ORG, AccessMode, PermissionGroup
from vault_access.features.permissions.schemas import GroupCreate, RuleCreate
from vault_access.features.roles.models import Role
from vault_access.utils import get_logger


log = get_logger(__name__)


DEFAULT_ROLES = {
    "vault_admin": {
        "description": "Full read / write access to every vault organization",
        "group": "All Organizations (read / write)",
        "access_mode": AccessMode.READ_WRITE,
    },
    "technician": {
        "description": "Field and service desk technicians",
        "group": "All Organizations (read only)",
        "access_mode": AccessMode.READ_ONLY,
    },
    "auditor": {
        "description": "Read-only reviewers",
        "group": "All Organizations (read only)",
        "access_mode": AccessMode.READ_ONLY,
    },
}


async def seed_roles(db: AsyncSession) -> dict[str, Role]:
    """
    Create default roles.

    Returns:
        Dictionary mapping role names to Role objects
    """
    log.info("Creating default roles...")
    roles_map = {}

    for name, role_config in DEFAULT_ROLES.items():
        existing = (await db.execute(select(Role).where(Role.name == name))).scalars().first()
        if existing:
            log.debug("Role '%s' already exists, skipping", name)
            roles_map[name] = existing
            continue

        role = Role(name=name, description=role_config["description"])
        db.add(role)
        roles_map[name] = role
        log.info("Created role: %s", name)

    await db.commit()
    return roles_map


async def seed_groups(db: AsyncSession, roles_map: dict[str, Role]):
    """
    Create one starter group per distinct group name and assign the roles.

    Args:
        db: Database session
        roles_map: Dictionary of role name -> Role object
    """
    log.info("Creating starter permission groups...")
    groups: dict[str, PermissionGroup] = {}

    for role_name, role_config in DEFAULT_ROLES.items():
        group_name = role_config["group"]
        group = groups.get(group_name)
        if group is None:
            stmt = select(PermissionGroup).where(PermissionGroup.name == group_name)
            group = (await db.execute(stmt)).scalars().first()

        if group is None:
            group = await service.create_group(db, SYSTEM, GroupCreate(name=group_name))
            await service.bulk_set_rules(
                db, SYSTEM, group.id,
                [RuleCreate(org_id=GLOBAL_ORG, access_mode=role_config["access_mode"])],
            )
            log.info("Created group '%s' (%s everywhere)", group_name, role_config["access_mode"].value)
        groups[group_name] = group

        role_id = roles_map[role_name].id
        assigned = {a.role_id for a in (await service.get_group(db, group.id)).roles}
        if role_id in assigned:
            continue
        await service.assign_to_role(db, SYSTEM, group.id, role_id)
        log.info("Assigned role '%s' to group '%s'", role_name, group_name)


async def main():
    """Main function to seed roles and groups."""
    log.info("Starting permission seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            roles_map = await seed_roles(db)
            await seed_groups(db, roles_map)
        except Exception as e:
            log.error("Error seeding permissions: %s", e, exc_info=True)
            await db.rollback()
            raise

    log.info("Permission seeding completed successfully!")


if __name__ == "__main__":
    asyncio.run(main())
