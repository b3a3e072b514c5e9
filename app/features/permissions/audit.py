"""
Audit ledger for authorization state changes.

Entries are added to the caller's transaction so that a mutation and its
audit row are committed together. Access attempts are not recorded here;
they go to the operational log.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import EvaluatorUnavailable
from app.features.permissions.models import AuditEntry
from app.utils import ensure_utc, get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AuditContext:
    """Who is acting, and from where."""
    actor_id: Optional[str]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM = AuditContext(actor_id=None)


def record_audit_entry(
    db: AsyncSession,
    ctx: AuditContext,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    module: Optional[str] = None,
    changes: Optional[Dict[str, Any]] = None,
) -> AuditEntry:
    """
    Add an audit entry to the current transaction.

    Args:
        db: Database session (the caller commits)
        ctx: Actor and request metadata
        action: Action performed (e.g., "role_created", "role_assigned")
        resource_type: Type of resource (e.g., "role", "permission", "role_assignment")
        resource_id: ID of the resource
        module: Module the change belongs to
        changes: Before/after payload

    Returns:
        The pending AuditEntry
    """
    entry = AuditEntry(
        actor_id=ctx.actor_id,
        action=action,
        module=module,
        resource_type=resource_type,
        resource_id=resource_id,
        changes=changes,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent[:255] if ctx.user_agent else None,
    )
    db.add(entry)

    log.info(
        "Audit: actor=%s action=%s resource=%s:%s module=%s",
        ctx.actor_id, action, resource_type, resource_id, module,
    )
    return entry


async def list_audit_entries(
    db: AsyncSession,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[AuditEntry], int]:
    """Return one page of entries (newest first) and the total match count."""
    since, until = ensure_utc(since), ensure_utc(until)
    stmt = select(AuditEntry)

    if actor_id:
        stmt = stmt.where(AuditEntry.actor_id == actor_id)
    if resource_type:
        stmt = stmt.where(AuditEntry.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEntry.resource_id == resource_id)
    if action:
        stmt = stmt.where(AuditEntry.action == action)
    if since:
        stmt = stmt.where(AuditEntry.created_at >= since)
    if until:
        stmt = stmt.where(AuditEntry.created_at < until)

    try:
        count_stmt = select(func.count()).select_from(stmt.subquery())
        total = (await db.execute(count_stmt)).scalar() or 0

        stmt = stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc()).offset(skip).limit(limit)
        entries = list((await db.execute(stmt)).scalars().all())
    except SQLAlchemyError as e:
        log.error("Audit query failed", exc_info=True)
        raise EvaluatorUnavailable() from e

    return entries, total
