"""
Pydantic schemas for permission-filtered vault browsing.
"""
from typing import List, Optional
from pydantic import BaseModel, Field

from vault_access.features.permissions.models import AccessMode, Section


class VaultItem(BaseModel):
    """A mirrored record the user may see, with the mode granted on it."""
    id: str
    org_id: str
    section: Section
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    name: str
    access_mode: AccessMode


class SearchResponse(BaseModel):
    items: List[VaultItem] = []
    total: int = Field(0, description="Allowed matches among the fetched candidates")
    total_before_filter: int = Field(0, description="Candidates fetched before permission filtering")
    page: int = 1
    page_size: int = 25
    has_more: bool = False


class PasswordReveal(BaseModel):
    id: str
    org_id: str
    name: str
    username: Optional[str] = None
    password: Optional[str] = None
    url: Optional[str] = None
    access_mode: AccessMode
