"""
Upsert and read helpers for the mirror tables.

Rows are matched on their vendor id (per section for categories and assets).
Callers own the transaction.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.features.mirror.models import CachedAsset, CachedCategory, CachedOrg
from vault_access.features.permissions.models import Section
from vault_access.features.vault.sections import (
    NormalizedAsset,
    NormalizedCategory,
    NormalizedOrg,
)


async def upsert_orgs(db: AsyncSession, orgs: Sequence[NormalizedOrg], synced_at: datetime) -> int:
    if not orgs:
        return 0
    vendor_ids = {o.vendor_id for o in orgs}
    result = await db.execute(select(CachedOrg).where(CachedOrg.vendor_id.in_(vendor_ids)))
    existing = {row.vendor_id: row for row in result.scalars()}

    for org in orgs:
        row = existing.get(org.vendor_id)
        if row is None:
            row = CachedOrg(vendor_id=org.vendor_id)
            db.add(row)
            existing[org.vendor_id] = row
        row.name = org.name
        row.short_name = org.short_name
        row.status = org.status
        row.org_type = org.org_type
        row.vendor_updated_at = org.vendor_updated_at
        row.synced_at = synced_at

    await db.flush()
    return len(orgs)


async def upsert_categories(
    db: AsyncSession,
    categories: Sequence[NormalizedCategory],
    synced_at: datetime,
) -> int:
    if not categories:
        return 0
    count = 0
    for section in {c.section for c in categories}:
        batch = [c for c in categories if c.section == section]
        result = await db.execute(
            select(CachedCategory).where(
                CachedCategory.section == section,
                CachedCategory.vendor_id.in_({c.vendor_id for c in batch}),
            )
        )
        existing = {row.vendor_id: row for row in result.scalars()}

        for category in batch:
            row = existing.get(category.vendor_id)
            if row is None:
                row = CachedCategory(section=section, vendor_id=category.vendor_id)
                db.add(row)
                existing[category.vendor_id] = row
            row.name = category.name
            # Taxonomy endpoints carry descriptions; categories seen on assets do not
            if category.description is not None:
                row.description = category.description
            row.synced_at = synced_at
            count += 1

    await db.flush()
    return count


async def upsert_assets(db: AsyncSession, assets: Sequence[NormalizedAsset], synced_at: datetime) -> int:
    if not assets:
        return 0
    count = 0
    for section in {a.section for a in assets}:
        batch = [a for a in assets if a.section == section]
        result = await db.execute(
            select(CachedAsset).where(
                CachedAsset.section == section,
                CachedAsset.vendor_id.in_({a.vendor_id for a in batch}),
            )
        )
        existing = {row.vendor_id: row for row in result.scalars()}

        for asset in batch:
            row = existing.get(asset.vendor_id)
            if row is None:
                row = CachedAsset(section=section, vendor_id=asset.vendor_id)
                db.add(row)
                existing[asset.vendor_id] = row
            row.org_id = asset.org_id
            row.category_id = asset.category_id
            row.category_name = asset.category_name
            row.name = asset.name
            row.vendor_updated_at = asset.vendor_updated_at
            row.synced_at = synced_at
            count += 1

    await db.flush()
    return count


def categories_from_assets(assets: Iterable[NormalizedAsset]) -> List[NormalizedCategory]:
    """Distinct (section, category) pairs referenced by asset listings."""
    seen = {}
    for asset in assets:
        if asset.category_id and (asset.section, asset.category_id) not in seen:
            seen[(asset.section, asset.category_id)] = NormalizedCategory(
                section=asset.section,
                vendor_id=asset.category_id,
                name=asset.category_name or asset.category_id,
            )
    return list(seen.values())


def contains(column, term: str):
    """Case-insensitive substring match with ``%`` and ``_`` taken literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return column.ilike(f"%{escaped}%", escape="\\")


async def cached_assets(
    db: AsyncSession,
    org_id: str,
    section: Section,
    category_id: Optional[str] = None,
) -> List[CachedAsset]:
    query = select(CachedAsset).where(CachedAsset.org_id == org_id, CachedAsset.section == section)
    if category_id:
        query = query.where(CachedAsset.category_id == category_id)
    result = await db.execute(query.order_by(CachedAsset.name, CachedAsset.vendor_id))
    return list(result.scalars())


async def cached_categories_for_org(db: AsyncSession, org_id: str, section: Section) -> List[CachedCategory]:
    """Categories used by the org's cached assets in ``section``."""
    used = (
        select(CachedAsset.category_id)
        .where(
            CachedAsset.org_id == org_id,
            CachedAsset.section == section,
            CachedAsset.category_id.is_not(None),
        )
        .distinct()
    )
    result = await db.execute(
        select(CachedCategory)
        .where(CachedCategory.section == section, CachedCategory.vendor_id.in_(used))
        .order_by(CachedCategory.name)
    )
    return list(result.scalars())


async def cached_orgs(db: AsyncSession, search: Optional[str] = None) -> List[CachedOrg]:
    query = select(CachedOrg)
    if search:
        query = query.where(contains(CachedOrg.name, search))
    result = await db.execute(query.order_by(CachedOrg.name))
    return list(result.scalars())


async def cached_org_ids(db: AsyncSession) -> set[str]:
    result = await db.execute(select(CachedOrg.vendor_id))
    return set(result.scalars())


async def count_rows(db: AsyncSession, model) -> int:
    return await db.scalar(select(func.count()).select_from(model)) or 0


async def cached_asset(db: AsyncSession, section: Section, vendor_id: str) -> Optional[CachedAsset]:
    return await db.scalar(
        select(CachedAsset).where(CachedAsset.section == section, CachedAsset.vendor_id == vendor_id)
    )
