"""
Metadata sync: mirrors the vault's organization / category / asset
hierarchy into the local cache tables.

A run imports organizations, then every section taxonomy, then each
organization's listing for every section. Failures are isolated to one
(section, organization) pair or one taxonomy; the run records them and
moves on. Only names and placement are mirrored, never secrets.
"""
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vault_access.core import config
from vault_access.core.database.base import generate_ulid
from vault_access.core.exceptions import SyncFailure, UpstreamFailure
from vault_access.features.mirror.lock import SyncLease
from vault_access.features.mirror.models import CachedAsset, CachedOrg, SyncRun, SyncState
from vault_access.features.mirror.store import (
    categories_from_assets,
    count_rows,
    upsert_assets,
    upsert_categories,
    upsert_orgs,
)
from vault_access.features.permissions.models import Section
from vault_access.features.vault.connector import RawListingConnector, paginate, require_capability
from vault_access.features.vault.sections import (
    SECTION_SHAPES,
    SectionShape,
    format_timestamp,
    normalize_category,
    normalize_org,
)
from vault_access.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)

ORGANIZATIONS = "organizations"
CATEGORIES = "categories"
SYNC_MODES = ("full", "incremental")


@dataclass
class SyncResult:
    success: bool
    mode: str
    counts: Dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_reason: Optional[str] = None
    run_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MetadataSync:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        connector: RawListingConnector,
        *,
        lease: Optional[SyncLease] = None,
        page_size: Optional[int] = None,
        delay_ms: Optional[int] = None,
        sections: Sequence[Section] = tuple(Section),
    ):
        self.connector = require_capability(connector, RawListingConnector, "MetadataSync")
        self._session_factory = session_factory
        self.lease = lease or SyncLease(session_factory, ttl_seconds=config.SYNC_LOCK_TTL_SECONDS)
        self.page_size = page_size or config.VAULT_PAGE_SIZE
        self.delay_ms = config.SYNC_INTER_REQUEST_DELAY_MS if delay_ms is None else delay_ms
        self.sections = [Section(s) for s in sections]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run_sync(self, mode: str = "full") -> SyncResult:
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")

        started_at = utcnow()
        clock = time.monotonic()
        holder = generate_ulid()

        if not await self.lease.acquire(holder, now=started_at):
            log.info("Vault sync (%s) skipped: another run holds the lease", mode)
            return SyncResult(success=False, mode=mode, skipped_reason="sync already in progress")

        result = SyncResult(success=False, mode=mode)
        entity_types = [ORGANIZATIONS, CATEGORIES] + [s.value for s in self.sections]
        completed = False
        try:
            result.run_id = await self._start_run(mode, started_at)
            cursors = await self._mark_running(entity_types)
            incremental = mode == "incremental"

            log.info("Vault sync started: mode=%s run=%s", mode, result.run_id)

            await self._sync_organizations(result, cursors.get(ORGANIZATIONS) if incremental else None, started_at)
            await self._sync_taxonomies(result, started_at)
            await self._sync_sections(result, cursors if incremental else {}, started_at)

            completed = True
            result.success = not result.errors
        except Exception as e:
            log.exception("Vault sync run %s aborted: %s", result.run_id, e)
            result.errors.append({"entity_type": "run", "scope": None, "message": _describe(e)})
            await self._abandon_running(entity_types, _describe(e))
            raise
        finally:
            result.duration_ms = int((time.monotonic() - clock) * 1000)
            if result.run_id:
                await self._finish_run(result, completed)
            await self.lease.release(holder)

        log.info(
            "Vault sync finished: mode=%s counts=%s errors=%d duration=%dms",
            mode, result.counts, len(result.errors), result.duration_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _sync_organizations(self, result: SyncResult, since: Optional[datetime], started_at: datetime) -> None:
        await self._progress(result.run_id, phase="organizations")
        filters = {"updated-at": _since_filter(since)} if since else None
        count = 0
        error = None
        try:
            async with self._session_factory() as db:
                async for records in self._pages("/organizations", filters=filters, sort="name"):
                    count += await upsert_orgs(db, [normalize_org(r) for r in records], utcnow())
                await db.commit()
        except Exception as e:
            error = _record_failure(result, SyncFailure(ORGANIZATIONS, _describe(e)), e)

        result.counts[ORGANIZATIONS] = count
        await self._save_state(ORGANIZATIONS, started_at, count, error)
        log.info("Vault sync: %d organizations imported", count)

    async def _sync_taxonomies(self, result: SyncResult, started_at: datetime) -> None:
        await self._progress(result.run_id, phase="categories")
        count = 0
        failures: List[SyncFailure] = []

        for shape in self._shapes():
            if not shape.taxonomy_path:
                continue
            try:
                async with self._session_factory() as db:
                    async for records in self._pages(shape.taxonomy_path, sort="name"):
                        categories = [normalize_category(shape.section, r) for r in records]
                        count += await upsert_categories(db, categories, utcnow())
                    await db.commit()
            except Exception as e:
                failures.append(_record_failure(
                    result, SyncFailure(CATEGORIES, _describe(e), scope=shape.section.value), e,
                ))

        result.counts[CATEGORIES] = count
        await self._save_state(CATEGORIES, started_at, count, failures[0] if failures else None)
        log.info("Vault sync: %d categories imported", count)

    async def _sync_sections(
        self,
        result: SyncResult,
        cursors: Dict[str, Optional[datetime]],
        started_at: datetime,
    ) -> None:
        async with self._session_factory() as db:
            orgs = (await db.execute(select(CachedOrg.vendor_id, CachedOrg.name).order_by(CachedOrg.name))).all()

        await self._progress(result.run_id, phase="assets", orgs_total=len(orgs), orgs_completed=0)
        counts = {s.value: 0 for s in self.sections}
        failures: Dict[str, SyncFailure] = {}
        upserted = 0

        for index, (org_id, org_name) in enumerate(orgs, start=1):
            await self._progress(result.run_id, current_org=org_name)
            for shape in self._shapes():
                entity_type = shape.section.value
                try:
                    count = await self._sync_section_for_org(shape, org_id, cursors.get(entity_type))
                except Exception as e:
                    failure = _record_failure(result, SyncFailure(entity_type, _describe(e), scope=org_id), e)
                    failures.setdefault(entity_type, failure)
                    continue
                counts[entity_type] += count
                upserted += count

            await self._progress(result.run_id, orgs_completed=index, assets_upserted=upserted)

        for entity_type, count in counts.items():
            result.counts[entity_type] = count
            await self._save_state(entity_type, started_at, count, failures.get(entity_type))
        log.info("Vault sync: %d assets imported across %d organizations", upserted, len(orgs))

    async def _sync_section_for_org(self, shape: SectionShape, org_id: str, since: Optional[datetime]) -> int:
        count = 0
        async with self._session_factory() as db:
            async for records in self._pages(
                shape.list_path(org_id),
                filters=shape.list_filters(org_id, updated_since=since),
                sort=shape.sort,
            ):
                assets = [shape.normalize(r, org_id) for r in records]
                now = utcnow()
                await upsert_categories(db, categories_from_assets(assets), now)
                count += await upsert_assets(db, assets, now)
            await db.commit()
        return count

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _shapes(self) -> Iterable[SectionShape]:
        return (SECTION_SHAPES[s] for s in self.sections)

    def _pages(self, path: str, filters: Optional[Dict[str, str]] = None, sort: Optional[str] = None):
        return paginate(
            self.connector, path,
            filters=filters, sort=sort,
            page_size=self.page_size, delay_ms=self.delay_ms,
        )

    async def _start_run(self, mode: str, started_at: datetime) -> str:
        async with self._session_factory() as db:
            run = SyncRun(mode=mode, status="running", phase="initializing", started_at=started_at)
            db.add(run)
            await db.commit()
            return run.id

    async def _progress(self, run_id: Optional[str], **values: Any) -> None:
        if not run_id:
            return
        async with self._session_factory() as db:
            await db.execute(update(SyncRun).where(SyncRun.id == run_id).values(**values))
            await db.commit()

    async def _finish_run(self, result: SyncResult, completed: bool) -> None:
        await self._progress(
            result.run_id,
            status="completed" if completed else "failed",
            phase="done",
            current_org=None,
            counts=dict(result.counts),
            errors=list(result.errors),
            finished_at=utcnow(),
            duration_ms=result.duration_ms,
        )

    async def _mark_running(self, entity_types: Sequence[str]) -> Dict[str, Optional[datetime]]:
        """Flag entity types as running and return their stored cursors."""
        async with self._session_factory() as db:
            result = await db.execute(select(SyncState).where(SyncState.entity_type.in_(entity_types)))
            states = {s.entity_type: s for s in result.scalars()}
            for entity_type in entity_types:
                state = states.get(entity_type)
                if state is None:
                    state = SyncState(entity_type=entity_type, total_synced=0)
                    db.add(state)
                    states[entity_type] = state
                state.status = "running"
            await db.commit()
            return {name: as_utc(state.cursor) for name, state in states.items()}

    async def _save_state(
        self,
        entity_type: str,
        started_at: datetime,
        count: int,
        error: Optional[SyncFailure],
    ) -> None:
        async with self._session_factory() as db:
            state = await db.get(SyncState, entity_type)
            if state is None:
                state = SyncState(entity_type=entity_type, total_synced=0)
                db.add(state)
            state.last_synced_at = utcnow()
            state.total_synced = (state.total_synced or 0) + count
            if error is None:
                state.cursor = started_at
                state.status = "idle"
                state.last_error = None
            else:
                state.status = "error"
                state.last_error = str(error)
            await db.commit()

    async def _abandon_running(self, entity_types: Sequence[str], message: str) -> None:
        """Entity types an aborted run never reached are left in error, not running."""
        async with self._session_factory() as db:
            await db.execute(
                update(SyncState)
                .where(SyncState.entity_type.in_(entity_types), SyncState.status == "running")
                .values(status="error", last_error=f"run aborted: {message}")
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_sync_progress(self) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as db:
            return await latest_run(db)

    async def is_running(self) -> bool:
        return await self.lease.is_held()


def _describe(error: Exception) -> str:
    if isinstance(error, UpstreamFailure):
        return str(error)
    return f"{type(error).__name__}: {error}"


def _record_failure(result: SyncResult, failure: SyncFailure, error: Exception) -> SyncFailure:
    result.errors.append(failure.as_dict())
    # Vendor failures are expected; anything else gets a traceback
    log.warning(
        "Vault sync: %s%s failed: %s",
        failure.entity_type, f" [{failure.scope}]" if failure.scope else "", failure,
        exc_info=not isinstance(error, UpstreamFailure),
    )
    return failure


def _since_filter(since: datetime) -> str:
    return f"{format_timestamp(since)},*"


def run_as_dict(run: SyncRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "mode": run.mode,
        "status": run.status,
        "phase": run.phase,
        "current_org": run.current_org,
        "orgs_completed": run.orgs_completed,
        "orgs_total": run.orgs_total,
        "assets_upserted": run.assets_upserted,
        "counts": run.counts or {},
        "errors": run.errors or [],
        "started_at": as_utc(run.started_at),
        "finished_at": as_utc(run.finished_at),
        "duration_ms": run.duration_ms,
    }


async def latest_run(db: AsyncSession) -> Optional[Dict[str, Any]]:
    run = await db.scalar(select(SyncRun).order_by(desc(SyncRun.started_at)).limit(1))
    return run_as_dict(run) if run else None


async def sync_status(db: AsyncSession) -> Dict[str, Any]:
    """Per entity type states, latest run progress, and mirror totals."""
    result = await db.execute(select(SyncState).order_by(SyncState.entity_type))
    states = [
        {
            "entity_type": s.entity_type,
            "cursor": as_utc(s.cursor),
            "last_synced_at": as_utc(s.last_synced_at),
            "total_synced": s.total_synced,
            "status": s.status,
            "last_error": s.last_error,
        }
        for s in result.scalars()
    ]
    return {
        "states": states,
        "progress": await latest_run(db),
        "total_cached_assets": await count_rows(db, CachedAsset),
        "total_cached_orgs": await count_rows(db, CachedOrg),
    }
