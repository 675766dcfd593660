"""
Mirror and sync bookkeeping models.

Cached rows are keyed by the vendor-assigned id and upserted on every
sync or discovery pass; nothing here deletes them.
"""
from datetime import datetime
from typing import Any, Dict, List
from sqlalchemy import String, Integer, DateTime, Text, JSON, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from vault_access.core.database.base import Base, TimestampMixin, generate_ulid
from vault_access.features.permissions.models import Section, section_type


class CachedOrg(Base):
    """A vault organization."""
    __tablename__ = "vault_cached_orgs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    vendor_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    short_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    org_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    vendor_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<CachedOrg(vendor_id={self.vendor_id}, name={self.name!r})>"


class CachedCategory(Base):
    """
    One entry of a section's taxonomy: password category, flexible asset
    type, configuration type, contact type, or document folder.
    """
    __tablename__ = "vault_cached_categories"
    __table_args__ = (
        UniqueConstraint("section", "vendor_id", name="uq_vault_cached_category"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    section: Mapped[Section] = mapped_column(section_type, nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<CachedCategory(section={self.section}, vendor_id={self.vendor_id}, name={self.name!r})>"


class CachedAsset(Base):
    """Name and placement of one vault record; the scope vocabulary for rules."""
    __tablename__ = "vault_cached_assets"
    __table_args__ = (
        UniqueConstraint("section", "vendor_id", name="uq_vault_cached_asset"),
        Index("ix_vault_cached_assets_scope", "org_id", "section", "category_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    section: Mapped[Section] = mapped_column(section_type, nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    vendor_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<CachedAsset(section={self.section}, vendor_id={self.vendor_id}, name={self.name!r})>"


class SyncState(Base):
    """
    Per entity type bookkeeping: ``organizations``, ``categories``, and one
    row per section.
    """
    __tablename__ = "vault_sync_states"

    entity_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    # Start time of the last run that imported this entity type without errors
    cursor: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="idle", nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class SyncRun(Base, TimestampMixin):
    """Progress and outcome of one sync run."""
    __tablename__ = "vault_sync_runs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    # running | completed | failed | skipped
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running", index=True)
    phase: Mapped[str] = mapped_column(String(50), nullable=False, default="initializing")
    current_org: Mapped[str | None] = mapped_column(String(255), nullable=True)
    orgs_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orgs_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    assets_upserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    counts: Mapped[Dict[str, int] | None] = mapped_column(JSON, nullable=True)
    errors: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)


class SyncLock(Base):
    """Lease row guarding one sync scope; expired leases may be taken over."""
    __tablename__ = "vault_sync_locks"

    scope: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
