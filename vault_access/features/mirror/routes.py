"""
Mirror API routes.

- ``/vault-sync``: trigger a sync run and read its status (admin only)
- ``/cron/vault-sync``: scheduled trigger authenticated by ``CRON_SECRET``
- ``/vault-permissions/cache``: discovery-backed browsing of the mirror,
  used by the rule editor to pick orgs, categories, and assets
"""
import hmac
from typing import List, Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core import config
from vault_access.core.database.engine import get_db
from vault_access.core.exceptions import SyncInProgress
from vault_access.features.mirror.schemas import (
    CachedAssetResponse,
    CachedCategoryResponse,
    CachedOrgResponse,
    SyncStatusResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from vault_access.features.mirror.sync import sync_status
from vault_access.features.permissions.models import Section
from vault_access.features.users.dependencies import get_current_admin_user
from vault_access.features.users.models import User
from vault_access.features.vault.services import VaultServices, get_vault_services
from vault_access.utils import get_logger


log = get_logger(__name__)
router = APIRouter()
cron_router = APIRouter()
cache_router = APIRouter()


async def _schedule_sync(
    services: VaultServices,
    background_tasks: BackgroundTasks,
    mode: str,
) -> SyncTriggerResponse:
    if await services.sync.is_running():
        raise SyncInProgress("A vault sync is already running")
    background_tasks.add_task(services.sync.run_sync, mode)
    log.info("Vault sync (%s) scheduled", mode)
    return SyncTriggerResponse(mode=mode, message=f"{mode.capitalize()} sync started")


# ============================================================================
# Sync Routes
# ============================================================================

@router.post("/trigger", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    background_tasks: BackgroundTasks,
    body: Optional[SyncTriggerRequest] = None,
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_admin_user),
):
    """Start a sync run in the background (admin only). 409 while another run holds the lease."""
    mode = body.mode if body else "incremental"
    log.info("User %s triggered %s vault sync", current_user.id, mode)
    return await _schedule_sync(services, background_tasks, mode)


@router.get("/status", response_model=SyncStatusResponse)
async def get_status(
    db: AsyncSession = Depends(get_db),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_admin_user),
):
    """Per entity type sync state, latest run progress, and mirror totals."""
    result = await sync_status(db)
    result["running"] = await services.sync.is_running()
    return result


@cron_router.post("/vault-sync", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def cron_sync(
    background_tasks: BackgroundTasks,
    mode: str = Query("incremental", pattern="^(full|incremental)$"),
    authorization: Optional[str] = Header(None),
    services: VaultServices = Depends(get_vault_services),
):
    """Scheduled trigger; expects ``Authorization: Bearer <CRON_SECRET>``."""
    if not config.CRON_SECRET:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_SECRET is not configured")

    expected = f"Bearer {config.CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return await _schedule_sync(services, background_tasks, mode)


# ============================================================================
# Cache Browsing Routes
# ============================================================================

@cache_router.get("/orgs", response_model=List[CachedOrgResponse])
async def list_cached_orgs(
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_admin_user),
):
    return await services.discovery.list_orgs(db, search)


@cache_router.get("/categories", response_model=List[CachedCategoryResponse])
async def list_cached_categories(
    org_id: str,
    section: Section,
    db: AsyncSession = Depends(get_db),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_admin_user),
):
    return await services.discovery.list_categories(db, org_id, section)


@cache_router.get("/assets", response_model=List[CachedAssetResponse])
async def list_cached_assets(
    org_id: str,
    section: Section,
    category_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_admin_user),
):
    return await services.discovery.list_assets(db, org_id, section, category_id)
