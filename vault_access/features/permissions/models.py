"""
Permission group models for scoped access to vaulted data.

A permission group is a reusable bundle of rules. Each rule targets a scope
in the vault hierarchy:

    organization -> section -> category -> individual asset

and grants one access mode at that scope. Groups are assigned to users
directly or to roles of the host RBAC subsystem.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    String, ForeignKey, Text, DateTime, Enum, Index, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vault_access.core.database.base import Base, TimestampMixin, generate_ulid


# Rule org id that applies to every organization
GLOBAL_ORG = "*"


class AccessMode(str, enum.Enum):
    READ_WRITE = "READ_WRITE"
    READ_ONLY = "READ_ONLY"
    DENIED = "DENIED"


class Section(str, enum.Enum):
    PASSWORDS = "passwords"
    FLEXIBLE_ASSETS = "flexible_assets"
    CONFIGURATIONS = "configurations"
    CONTACTS = "contacts"
    DOCUMENTS = "documents"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


access_mode_type = Enum(
    AccessMode, name="vault_access_mode", native_enum=False, length=20,
    values_callable=_enum_values,
)
section_type = Enum(
    Section, name="vault_section", native_enum=False, length=30,
    values_callable=_enum_values,
)


# ============================================================================
# Core Models
# ============================================================================

class PermissionGroup(Base, TimestampMixin):
    """
    Named bundle of vault access rules.

    Examples: Tier1, Tier2, Projects, Read-only auditors
    """
    __tablename__ = "vault_permission_groups"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(26), nullable=True)

    rules: Mapped[list["PermissionRule"]] = relationship(
        "PermissionRule",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [PermissionRule.org_id, PermissionRule.section, PermissionRule.category_id],
    )
    users: Mapped[list["GroupUserAssignment"]] = relationship(
        "GroupUserAssignment",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    roles: Mapped[list["GroupRoleAssignment"]] = relationship(
        "GroupRoleAssignment",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<PermissionGroup(id={self.id}, name={self.name!r})>"


class PermissionRule(Base, TimestampMixin):
    """
    One scoped grant inside a group.

    Null scope fields are wildcards for that level and everything below it:
    - org only                      -> whole organization
    - org + section                 -> every item of that section
    - org + section + category      -> every item of that category
    - org + section (+ category) + asset -> that single item
    """
    __tablename__ = "vault_permission_rules"
    __table_args__ = (
        Index("ix_vault_permission_rules_group_org", "group_id", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("vault_permission_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    section: Mapped[Section | None] = mapped_column(section_type, nullable=True)
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    asset_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    access_mode: Mapped[AccessMode] = mapped_column(
        access_mode_type, nullable=False, default=AccessMode.READ_WRITE
    )

    group: Mapped["PermissionGroup"] = relationship("PermissionGroup", back_populates="rules")

    def scope_dict(self) -> dict:
        return {
            "org_id": self.org_id,
            "section": self.section.value if self.section else None,
            "category_id": self.category_id,
            "asset_id": self.asset_id,
            "access_mode": self.access_mode.value,
        }

    def __repr__(self) -> str:
        return (
            f"<PermissionRule(id={self.id}, group_id={self.group_id}, org={self.org_id}, "
            f"section={self.section}, category={self.category_id}, asset={self.asset_id}, "
            f"mode={self.access_mode})>"
        )


class GroupUserAssignment(Base):
    """Direct assignment of a group to a user."""
    __tablename__ = "vault_permission_group_users"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_vault_group_user"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("vault_permission_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    group: Mapped["PermissionGroup"] = relationship("PermissionGroup", back_populates="users")

    def __repr__(self) -> str:
        return f"<GroupUserAssignment(group_id={self.group_id}, user_id={self.user_id})>"


class GroupRoleAssignment(Base):
    """Assignment of a group to every holder of a role."""
    __tablename__ = "vault_permission_group_roles"
    __table_args__ = (
        UniqueConstraint("group_id", "role_id", name="uq_vault_group_role"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("vault_permission_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Role ids belong to the host RBAC subsystem
    role_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    assigned_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    group: Mapped["PermissionGroup"] = relationship("PermissionGroup", back_populates="roles")

    def __repr__(self) -> str:
        return f"<GroupRoleAssignment(group_id={self.group_id}, role_id={self.role_id})>"
