"""
Pydantic schemas for vault permission groups.

Request and response models for groups, rules, assignments, and access tests.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator

from vault_access.features.permissions.models import AccessMode, Section, GLOBAL_ORG


def check_rule_scope(
    org_id: Optional[str],
    section: Optional[Section],
    category_id: Optional[str],
    asset_id: Optional[str],
) -> Optional[str]:
    """Return an error message if the scope fields do not form a valid rule."""
    if not org_id:
        return "org_id is required"
    if org_id == GLOBAL_ORG and (section or category_id or asset_id):
        return "Global '*' rules cannot narrow to a section, category, or asset"
    if (category_id or asset_id) and not section:
        return "Category and asset rules must name a section"
    return None


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    """Base permission group schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Group name")
    description: Optional[str] = Field(None, max_length=500, description="Group description")


class GroupCreate(GroupBase):
    """Schema for creating a permission group."""


class GroupUpdate(BaseModel):
    """Schema for updating a permission group."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class GroupResponse(GroupBase):
    """Schema for permission group response."""
    id: str
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupSummary(GroupResponse):
    """Group with rule and assignment counts, for list views."""
    rule_count: int = 0
    user_count: int = 0
    role_count: int = 0


# ============================================================================
# Rule Schemas
# ============================================================================

class RuleCreate(BaseModel):
    """
    Schema for one scoped rule.

    Leave section, category_id, and asset_id empty to cover everything below
    the last populated level. ``org_id="*"`` applies to every organization.
    """
    org_id: str = Field(..., min_length=1, max_length=64, description="Vault organization ID or '*'")
    section: Optional[Section] = Field(None, description="Vault section")
    category_id: Optional[str] = Field(None, max_length=64, description="Category / asset type ID")
    asset_id: Optional[str] = Field(None, max_length=64, description="Vault record ID")
    access_mode: AccessMode = Field(AccessMode.READ_WRITE, description="Granted mode")

    @model_validator(mode="after")
    def scope_is_consistent(self) -> "RuleCreate":
        error = check_rule_scope(self.org_id, self.section, self.category_id, self.asset_id)
        if error:
            raise ValueError(error)
        return self


class RuleUpdate(BaseModel):
    """Schema for updating a rule; unset fields are left unchanged."""
    org_id: Optional[str] = Field(None, min_length=1, max_length=64)
    section: Optional[Section] = None
    category_id: Optional[str] = Field(None, max_length=64)
    asset_id: Optional[str] = Field(None, max_length=64)
    access_mode: Optional[AccessMode] = None


class RuleResponse(BaseModel):
    """Schema for rule response."""
    id: str
    group_id: str
    org_id: str
    org_name: Optional[str] = None
    section: Optional[Section]
    category_id: Optional[str]
    asset_id: Optional[str]
    access_mode: AccessMode

    model_config = ConfigDict(from_attributes=True)


class BulkSetRules(BaseModel):
    """Replace every rule of a group at once."""
    rules: List[RuleCreate] = Field(default_factory=list)


class BulkSetRulesResponse(BaseModel):
    success: bool = True
    rule_count: int


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignUserToGroup(BaseModel):
    user_id: str = Field(..., description="User ID")


class AssignRoleToGroup(BaseModel):
    role_id: str = Field(..., description="Role ID")


class UserAssignmentResponse(BaseModel):
    id: str
    group_id: str
    user_id: str
    assigned_by: Optional[str]
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleAssignmentResponse(BaseModel):
    id: str
    group_id: str
    role_id: str
    assigned_by: Optional[str]
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupDetail(GroupResponse):
    """Group with rules (org names resolved from the mirror) and assignments."""
    rules: List[RuleResponse] = []
    users: List[UserAssignmentResponse] = []
    roles: List[RoleAssignmentResponse] = []


# ============================================================================
# Access Check Schemas
# ============================================================================

class EffectiveGroupResponse(BaseModel):
    group_id: str
    group_name: str
    assignment_type: str
    role_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AccessDecisionResponse(BaseModel):
    allowed: bool
    mode: AccessMode
    rule_id: Optional[str] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    specificity: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class AccessTestRequest(BaseModel):
    """Scope to evaluate for a user, for administrative debugging."""
    user_id: str
    org_id: str
    section: Optional[Section] = None
    category_id: Optional[str] = None
    asset_id: Optional[str] = None


class AccessTestResponse(AccessDecisionResponse):
    user_groups: List[EffectiveGroupResponse] = []
