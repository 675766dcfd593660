"""
Read-through discovery over the mirror.

Browse requests read the cache first. When an organization's rows are
missing or stale, the vault is queried live, the records are normalized
into the cache schema and upserted, and the refreshed rows are returned.
Vendor failures never surface to the caller: stale rows (or nothing) are
returned instead.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core import config
from vault_access.core.exceptions import UpstreamFailure
from vault_access.features.mirror.models import CachedAsset, CachedCategory, CachedOrg
from vault_access.features.mirror.store import (
    cached_assets,
    cached_categories_for_org,
    cached_orgs,
    categories_from_assets,
    upsert_assets,
    upsert_categories,
    upsert_orgs,
)
from vault_access.features.permissions.models import Section
from vault_access.features.vault.connector import RawListingConnector, paginate, require_capability
from vault_access.features.vault.sections import NormalizedAsset, normalize_org, shape_for
from vault_access.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)


@dataclass(frozen=True)
class CacheFreshness:
    """Time-to-live per entity type, in seconds. ``0`` means rows never expire."""
    assets_ttl_seconds: int = 86400
    categories_ttl_seconds: int = 604800

    @classmethod
    def from_config(cls) -> "CacheFreshness":
        return cls(
            assets_ttl_seconds=config.CACHE_TTL_ASSETS_SECONDS,
            categories_ttl_seconds=config.CACHE_TTL_CATEGORIES_SECONDS,
        )

    @staticmethod
    def is_fresh(synced_at: Optional[datetime], ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        if ttl_seconds <= 0:
            return True
        if synced_at is None:
            return False
        now = now or utcnow()
        return now - as_utc(synced_at) < timedelta(seconds=ttl_seconds)

    def rows_fresh(self, rows: Sequence, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        """True when every row was synced within the TTL."""
        if not rows:
            return False
        oldest = min(as_utc(r.synced_at) for r in rows)
        return self.is_fresh(oldest, ttl_seconds, now)


class VaultDiscovery:
    def __init__(
        self,
        connector: RawListingConnector,
        freshness: CacheFreshness,
        *,
        page_size: Optional[int] = None,
    ):
        self.connector = require_capability(connector, RawListingConnector, "VaultDiscovery")
        self.freshness = freshness
        self.page_size = page_size or config.VAULT_PAGE_SIZE

    async def list_orgs(self, db: AsyncSession, search: Optional[str] = None) -> List[CachedOrg]:
        """Cached organizations; an empty mirror is backfilled from the vault once."""
        cached = await cached_orgs(db, search)
        if cached or search:
            return cached

        try:
            orgs = []
            async for records in paginate(self.connector, "/organizations", sort="name", page_size=self.page_size):
                orgs.extend(normalize_org(r) for r in records)
        except (UpstreamFailure, httpx.HTTPError) as e:
            log.warning("Discovery: organization listing failed: %s", e)
            return cached

        if await self._backfill(db, "organizations", upsert_orgs, orgs, utcnow()):
            log.info("Discovery: backfilled %d organizations", len(orgs))
        return await cached_orgs(db)

    async def list_assets(
        self,
        db: AsyncSession,
        org_id: str,
        section: Section,
        category_id: Optional[str] = None,
    ) -> List[CachedAsset]:
        section = Section(section)
        cached = await cached_assets(db, org_id, section, category_id)
        if self.freshness.rows_fresh(cached, self.freshness.assets_ttl_seconds):
            return cached

        try:
            fetched = await self._fetch_assets(org_id, section, category_id)
        except (UpstreamFailure, httpx.HTTPError) as e:
            log.warning("Discovery: live %s listing for org %s failed: %s", section.value, org_id, e)
            return cached

        await self._backfill(db, section.value, self._store, fetched)
        log.debug("Discovery: %d %s for org %s fetched live", len(fetched), section.value, org_id)
        return await cached_assets(db, org_id, section, category_id)

    async def list_categories(self, db: AsyncSession, org_id: str, section: Section) -> List[CachedCategory]:
        section = Section(section)
        cached = await cached_categories_for_org(db, org_id, section)
        if self.freshness.rows_fresh(cached, self.freshness.categories_ttl_seconds):
            return cached

        try:
            fetched = await self._fetch_assets(org_id, section)
        except (UpstreamFailure, httpx.HTTPError) as e:
            log.warning("Discovery: live %s categories for org %s failed: %s", section.value, org_id, e)
            return cached

        await self._backfill(db, f"{section.value} categories", self._store, fetched)
        return await cached_categories_for_org(db, org_id, section)

    async def _fetch_assets(
        self,
        org_id: str,
        section: Section,
        category_id: Optional[str] = None,
    ) -> List[NormalizedAsset]:
        shape = shape_for(section)
        assets: List[NormalizedAsset] = []
        async for records in paginate(
            self.connector,
            shape.list_path(org_id),
            filters=shape.list_filters(org_id, category_id=category_id),
            sort=shape.sort,
            page_size=self.page_size,
        ):
            assets.extend(shape.normalize(r, org_id) for r in records)
        return assets

    @staticmethod
    async def _backfill(db: AsyncSession, what: str, write: Callable[..., Awaitable], *args) -> bool:
        """
        Apply an opportunistic cache upsert inside a savepoint.

        A failed write (for instance a unique clash with a concurrent sync)
        only rolls back the savepoint; the read is then answered from
        whatever the cache holds.
        """
        try:
            async with db.begin_nested():
                await write(db, *args)
        except SQLAlchemyError as e:
            log.warning("Discovery: caching fetched %s failed: %s", what, e)
            return False
        return True

    @staticmethod
    async def _store(db: AsyncSession, assets: List[NormalizedAsset]) -> None:
        now = utcnow()
        await upsert_categories(db, categories_from_assets(assets), now)
        await upsert_assets(db, assets, now)
