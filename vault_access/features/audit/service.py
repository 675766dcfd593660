"""
Audit helpers.

Audit rows are written into the caller's session and flushed, but never
committed here: the row commits or rolls back together with the action it
describes. A failed audit write therefore aborts the action (fail-closed).
"""
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.features.audit.models import AuditLog
from vault_access.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AuditContext:
    """Actor and client details attached to every audit row of one request."""
    actor_id: Optional[str]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request, actor_id: Optional[str]) -> "AuditContext":
        return cls(
            actor_id=actor_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )


SYSTEM = AuditContext(actor_id=None)


def diff_changes(before: Mapping[str, Any], after: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Field-level diff: ``{"name": {"from": "Tier1", "to": "Tier 1"}}``.

    Keys present on only one side show ``None`` on the other.
    """
    changes: Dict[str, Dict[str, Any]] = {}
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if old != new:
            changes[key] = {"from": old, "to": new}
    return changes


async def record_audit(
    db: AsyncSession,
    ctx: AuditContext,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    category: str = "SECURITY",
) -> AuditLog:
    """Add an audit row to the current transaction and flush it."""
    entry = AuditLog(
        actor_id=ctx.actor_id,
        action=action,
        category=category,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    db.add(entry)
    await db.flush()

    log.info(
        "Audit: actor=%s action=%s resource=%s:%s",
        ctx.actor_id, action, resource_type, resource_id,
    )
    return entry
