"""
Error taxonomy for vault access control.

Routes translate these into HTTP responses via the exception handlers
registered in ``vault_access.main``.
"""
from typing import Any, Dict, Optional


class VaultAccessError(Exception):
    """Base class for domain errors."""


class NotFound(VaultAccessError):
    """Unknown group, rule, or assignment on an administrative operation."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class Conflict(VaultAccessError):
    """Duplicate (group, user) or (group, role) assignment."""


class AccessDenied(VaultAccessError):
    """
    Raised by point-retrieval consumers (e.g. a password reveal) when the
    resolver denies the scope. List and browse consumers never raise this;
    they return an empty result instead.
    """

    def __init__(self, message: str, scope: Optional[Dict[str, Any]] = None):
        self.scope = scope or {}
        super().__init__(message)


class UpstreamFailure(VaultAccessError):
    """The vendor API returned an error or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SyncFailure(VaultAccessError):
    """A single entity type failed to import during a sync run."""

    def __init__(self, entity_type: str, message: str, scope: Optional[str] = None):
        self.entity_type = entity_type
        self.scope = scope
        super().__init__(message)

    def as_dict(self) -> Dict[str, Any]:
        return {"entity_type": self.entity_type, "scope": self.scope, "message": str(self)}


class SyncInProgress(VaultAccessError):
    """The sync lease for this scope is held by another run."""


class CapabilityMissing(TypeError):
    """A connector lacks a capability that a component requires."""


class InvalidRule(VaultAccessError):
    """Rule scope fields do not form a valid rule."""
