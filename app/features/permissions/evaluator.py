"""
Permission evaluation.

Every decision is a single SELECT over

    role_assignments ⋈ roles ⋈ role_permissions ⋈ permissions ⋈ modules

filtered to live assignments (no expiry, or expiry in the future) and active
modules. Role priority plays no part: a principal has exactly the union of
the permissions attached to the roles it currently holds.

These reads run under the service's own database identity and never depend
on storage-level policies that would call back into this module.
"""
from typing import Optional, Set

from sqlalchemy import Select, and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import with_deadline
from app.core.errors import EvaluatorUnavailable
from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import Module, Permission, Role, RoleAssignment, role_permissions
from app.features.principals.models import Principal
from app.utils import get_logger, utcnow


log = get_logger(__name__)


def live_assignment_clause(now=None):
    """Lazy expiry: an assignment past ``expires_at`` does not exist."""
    now = now or utcnow()
    return or_(RoleAssignment.expires_at.is_(None), RoleAssignment.expires_at > now)


def effective_permissions_query(principal_id: str, *columns) -> Select:
    """
    Build the join shared by all evaluator reads.

    The caller picks the selected columns and adds its own filters.
    """
    return (
        select(*columns)
        .select_from(RoleAssignment)
        .join(Role, Role.id == RoleAssignment.role_id)
        .join(role_permissions, role_permissions.c.role_id == Role.id)
        .join(Permission, Permission.id == role_permissions.c.permission_id)
        .join(Module, Module.id == Permission.module_id)
        .where(
            and_(
                RoleAssignment.principal_id == principal_id,
                Module.is_active.is_(True),
                live_assignment_clause(),
            )
        )
    )


@with_deadline(EvaluatorUnavailable)
async def has_permission(db: AsyncSession, principal_id: Optional[str], key: PermissionKey) -> bool:
    """
    Check whether a principal currently holds ``key``.

    Unknown principals, inactive modules and missing permissions all resolve
    to False. Store failures raise EvaluatorUnavailable.
    """
    if not principal_id:
        return False

    stmt = effective_permissions_query(principal_id, Permission.id).where(
        Module.name == key.module,
        Permission.resource == key.resource,
        Permission.action == key.action,
    )
    try:
        allowed = bool((await db.execute(stmt.exists().select())).scalar())
    except SQLAlchemyError as e:
        log.error("Permission lookup failed for principal %s", principal_id, exc_info=True)
        raise EvaluatorUnavailable() from e

    log.debug("Principal %s %s %s", principal_id, "granted" if allowed else "denied", key)
    return allowed


@with_deadline(EvaluatorUnavailable)
async def can_access_module(db: AsyncSession, principal_id: Optional[str], module_name: str) -> bool:
    """
    Check whether a principal may enter a module at all.

    Modules flagged ``requires_employee`` are closed to principals without an
    employee reference, before any permission is looked at. Otherwise any
    live permission in the module grants access.
    """
    if not principal_id:
        return False

    try:
        gate = await db.execute(
            select(
                select(Module.requires_employee).where(Module.name == module_name).scalar_subquery(),
                select(Principal.employee_ref).where(Principal.id == principal_id).scalar_subquery(),
            )
        )
        requires_employee, employee_ref = gate.one()

        if requires_employee and not employee_ref:
            log.debug("Principal %s has no employee link; module %s closed", principal_id, module_name)
            return False

        stmt = effective_permissions_query(principal_id, Permission.id).where(Module.name == module_name)
        return bool((await db.execute(stmt.exists().select())).scalar())
    except SQLAlchemyError as e:
        log.error("Module access lookup failed for principal %s", principal_id, exc_info=True)
        raise EvaluatorUnavailable() from e


@with_deadline(EvaluatorUnavailable)
async def list_permissions(db: AsyncSession, principal_id: Optional[str]) -> Set[PermissionKey]:
    """Enumerate the principal's effective permissions, deduplicated across roles."""
    if not principal_id:
        return set()

    stmt = effective_permissions_query(
        principal_id, Module.name, Permission.resource, Permission.action
    ).distinct()
    try:
        rows = (await db.execute(stmt)).all()
    except SQLAlchemyError as e:
        log.error("Permission listing failed for principal %s", principal_id, exc_info=True)
        raise EvaluatorUnavailable() from e

    return {PermissionKey(module, resource, action) for module, resource, action in rows}


async def list_principal_roles(db: AsyncSession, principal_id: str) -> list[Role]:
    """Roles the principal currently holds, highest priority first."""
    stmt = (
        select(Role)
        .join(RoleAssignment, RoleAssignment.role_id == Role.id)
        .where(RoleAssignment.principal_id == principal_id, live_assignment_clause())
        .order_by(Role.priority.desc(), Role.name)
    )
    try:
        return list((await db.execute(stmt)).scalars().all())
    except SQLAlchemyError as e:
        log.error("Role listing failed for principal %s", principal_id, exc_info=True)
        raise EvaluatorUnavailable() from e
