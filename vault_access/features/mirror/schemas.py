"""
Pydantic schemas for the mirror cache and sync endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

from vault_access.features.permissions.models import Section


class CachedOrgResponse(BaseModel):
    vendor_id: str
    name: str
    short_name: Optional[str] = None
    status: Optional[str] = None
    org_type: Optional[str] = None
    synced_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CachedCategoryResponse(BaseModel):
    section: Section
    vendor_id: str
    name: str
    description: Optional[str] = None
    synced_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CachedAssetResponse(BaseModel):
    vendor_id: str
    org_id: str
    section: Section
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    name: str
    vendor_updated_at: Optional[datetime] = None
    synced_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SyncTriggerRequest(BaseModel):
    mode: Literal["full", "incremental"] = Field("incremental", description="Sync mode")


class SyncTriggerResponse(BaseModel):
    accepted: bool = True
    mode: str
    message: str


class SyncStateResponse(BaseModel):
    entity_type: str
    cursor: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    total_synced: int = 0
    status: str
    last_error: Optional[str] = None


class SyncProgressResponse(BaseModel):
    id: str
    mode: str
    status: str
    phase: str
    current_org: Optional[str] = None
    orgs_completed: int = 0
    orgs_total: int = 0
    assets_upserted: int = 0
    counts: Dict[str, int] = {}
    errors: List[Dict[str, Any]] = []
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class SyncStatusResponse(BaseModel):
    states: List[SyncStateResponse] = []
    progress: Optional[SyncProgressResponse] = None
    running: bool = False
    total_cached_assets: int = 0
    total_cached_orgs: int = 0
