"""
Permission-filtered consumption of vault data.

Every candidate row is resolved against the caller's effective groups with
one batch resolution per request. Browse endpoints drop denied rows (an
empty list when everything is denied); the password list and the reveal
endpoint answer 403 instead, so a client can tell "no access" from
"nothing there" and from "unknown record" (404).
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.core import config
from vault_access.core.database.engine import get_db
from vault_access.core.exceptions import AccessDenied, NotFound
from vault_access.core.limiter import limiter
from vault_access.features.audit.service import AuditContext, record_audit
from vault_access.features.documentation.schemas import PasswordReveal, SearchResponse, VaultItem
from vault_access.features.mirror.models import CachedAsset
from vault_access.features.mirror.store import cached_asset, contains
from vault_access.features.permissions.models import Section
from vault_access.features.permissions.resolver import (
    AccessDecision,
    ScopeTuple,
    batch_resolve_access,
    filter_allowed,
)
from vault_access.features.roles.dependencies import get_role_provider
from vault_access.features.roles.provider import RoleMembershipProvider
from vault_access.features.users.dependencies import get_current_user
from vault_access.features.users.models import User
from vault_access.features.vault.sections import shape_for
from vault_access.features.vault.services import VaultServices, get_vault_services
from vault_access.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def asset_scope(asset: CachedAsset) -> ScopeTuple:
    return ScopeTuple(asset.org_id, asset.section, asset.category_id, asset.vendor_id)


def _item(asset: CachedAsset, decision: AccessDecision) -> VaultItem:
    return VaultItem(
        id=asset.vendor_id,
        org_id=asset.org_id,
        section=asset.section,
        category_id=asset.category_id,
        category_name=asset.category_name,
        name=asset.name,
        access_mode=decision.mode,
    )


async def _browse(
    db: AsyncSession,
    roles: RoleMembershipProvider,
    services: VaultServices,
    user: User,
    org_id: str,
    section: Section,
    category_id: Optional[str],
) -> List[VaultItem]:
    assets = await services.discovery.list_assets(db, org_id, section, category_id)
    decisions = await batch_resolve_access(db, roles, user.id, [asset_scope(a) for a in assets])
    return [_item(a, decisions[asset_scope(a)]) for a in assets if decisions[asset_scope(a)].allowed]


# ============================================================================
# Search
# ============================================================================

@router.get("/search", response_model=SearchResponse)
@limiter.limit(config.SEARCH_RATE_LIMIT)
async def search(
    request: Request,
    q: str = Query(..., min_length=1, max_length=200),
    org_id: Optional[str] = None,
    section: Optional[Section] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    roles: RoleMembershipProvider = Depends(get_role_provider),
    current_user: User = Depends(get_current_user),
):
    """
    Search mirrored record names.

    Fetches ``SEARCH_OVERFETCH_FACTOR`` times as many candidates as the
    requested pages need, so that permission filtering still fills the page.
    """
    stmt = select(CachedAsset).where(contains(CachedAsset.name, q))
    if org_id:
        stmt = stmt.where(CachedAsset.org_id == org_id)
    if section:
        stmt = stmt.where(CachedAsset.section == section)
    stmt = stmt.order_by(CachedAsset.name, CachedAsset.vendor_id).limit(
        page * page_size * config.SEARCH_OVERFETCH_FACTOR
    )
    candidates = list((await db.execute(stmt)).scalars().all())

    decisions = await batch_resolve_access(db, roles, current_user.id, [asset_scope(a) for a in candidates])
    result = filter_allowed(candidates, asset_scope, decisions, page=page, page_size=page_size)

    log.debug(
        "Search %r by %s: %d of %d candidates allowed",
        q, current_user.id, result.total, result.total_before_filter,
    )
    return SearchResponse(
        items=[_item(asset, decision) for asset, decision in result.items],
        total=result.total,
        total_before_filter=result.total_before_filter,
        page=page,
        page_size=page_size,
        has_more=result.has_more,
    )


# ============================================================================
# Browse
# ============================================================================

@router.get("/organizations/{org_id}/configurations", response_model=List[VaultItem])
async def list_configurations(
    org_id: str,
    category_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    roles: RoleMembershipProvider = Depends(get_role_provider),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_user),
):
    """Configurations the user may see; empty when none are allowed."""
    return await _browse(db, roles, services, current_user, org_id, Section.CONFIGURATIONS, category_id)


@router.get("/organizations/{org_id}/contacts", response_model=List[VaultItem])
async def list_contacts(
    org_id: str,
    category_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    roles: RoleMembershipProvider = Depends(get_role_provider),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_user),
):
    return await _browse(db, roles, services, current_user, org_id, Section.CONTACTS, category_id)


@router.get("/organizations/{org_id}/passwords", response_model=List[VaultItem])
async def list_passwords(
    org_id: str,
    category_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    roles: RoleMembershipProvider = Depends(get_role_provider),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_user),
):
    """
    Password names the user may see.

    403 when the user holds no access to the section (or requested
    category) and no individual password is allowed either.
    """
    section_scope = ScopeTuple(org_id, Section.PASSWORDS, category_id)
    assets = await services.discovery.list_assets(db, org_id, Section.PASSWORDS, category_id)
    decisions = await batch_resolve_access(
        db, roles, current_user.id, [section_scope] + [asset_scope(a) for a in assets]
    )

    items = [_item(a, decisions[asset_scope(a)]) for a in assets if decisions[asset_scope(a)].allowed]
    if not items and not decisions[section_scope].allowed:
        raise AccessDenied("Access to passwords denied", scope=section_scope.as_dict())
    return items


# ============================================================================
# Reveal
# ============================================================================

@router.post("/passwords/{password_id}/reveal", response_model=PasswordReveal)
@limiter.limit(config.REVEAL_RATE_LIMIT)
async def reveal_password(
    request: Request,
    password_id: str,
    db: AsyncSession = Depends(get_db),
    roles: RoleMembershipProvider = Depends(get_role_provider),
    services: VaultServices = Depends(get_vault_services),
    current_user: User = Depends(get_current_user),
):
    """
    Reveal one credential.

    404 for a password unknown to the mirror, 403 when access is denied.
    The audit row is committed before the secret is fetched.
    """
    asset = await cached_asset(db, Section.PASSWORDS, password_id)
    if asset is None:
        raise NotFound("password", password_id)

    scope = asset_scope(asset)
    decisions = await batch_resolve_access(db, roles, current_user.id, [scope])
    decision = decisions[scope]
    ctx = AuditContext.from_request(request, current_user.id)
    details = {**scope.as_dict(), "rule_id": decision.rule_id, "mode": decision.mode.value}

    if not decision.allowed:
        await record_audit(db, ctx, "credential.denied", "vault_password", password_id, details=details)
        await db.commit()
        raise AccessDenied("Access to this password denied", scope=scope.as_dict())

    fetcher = services.record_fetcher
    if fetcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vault connector cannot fetch single records",
        )

    await record_audit(db, ctx, "credential.revealed", "vault_password", password_id, details=details)
    await db.commit()

    record = await fetcher.request_single_raw(shape_for(Section.PASSWORDS).record_path(asset.org_id, password_id))
    attrs = record.attributes
    return PasswordReveal(
        id=record.id,
        org_id=asset.org_id,
        name=attrs.get("name") or asset.name,
        username=attrs.get("username"),
        password=attrs.get("password"),
        url=attrs.get("url"),
        access_mode=decision.mode,
    )
