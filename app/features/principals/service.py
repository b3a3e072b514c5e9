"""
Principal lookups and profile changes.
"""
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Conflict, Forbidden, NotFound, StoreFailure
from app.features.permissions.audit import AuditContext, record_audit_entry
from app.features.permissions.evaluator import live_assignment_clause
from app.features.permissions.keys import USER_MANAGEMENT_MODULE
from app.features.permissions.models import RoleAssignment
from app.features.principals.models import Principal, PrincipalStatus
from app.utils import get_logger, utcnow


log = get_logger(__name__)


async def get_principal(db: AsyncSession, principal_id: str) -> Principal:
    result = await db.execute(select(Principal).where(Principal.id == principal_id))
    principal = result.scalar_one_or_none()
    if principal is None:
        raise NotFound("Principal not found")
    return principal


async def get_or_create_principal(
    db: AsyncSession,
    identity_id: str,
    email: str,
    display_name: Optional[str] = None,
) -> Tuple[Principal, bool]:
    """
    Look up a principal by identity-provider subject, creating it on first
    authentication.

    Returns:
        (principal, created)
    """
    try:
        result = await db.execute(select(Principal).where(Principal.identity_id == identity_id))
        principal = result.scalar_one_or_none()

        if principal is not None:
            principal.last_active_at = utcnow()
            await db.commit()
            return principal, False

        principal = Principal(
            identity_id=identity_id,
            email=email,
            display_name=display_name,
            last_active_at=utcnow(),
        )
        db.add(principal)
        await db.flush()
        record_audit_entry(
            db, AuditContext(principal.id), "principal_created", "principal", principal.id,
            module=USER_MANAGEMENT_MODULE, changes={"email": email},
        )
        await db.commit()
    except IntegrityError:
        # Concurrent first login for the same identity, or the email is taken
        await db.rollback()
        result = await db.execute(select(Principal).where(Principal.identity_id == identity_id))
        principal = result.scalar_one_or_none()
        if principal is None:
            raise Conflict("Email is already linked to another identity", count=1) from None
        return principal, False
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Failed to load principal for identity %s", identity_id, exc_info=True)
        raise StoreFailure() from e

    log.info("Created principal %s for identity %s", principal.id, identity_id)
    return principal, True


async def update_profile(
    db: AsyncSession,
    principal: Principal,
    ctx: AuditContext,
    display_name: Optional[str] = None,
    employee_ref: Optional[str] = None,
    clear_employee_ref: bool = False,
) -> Principal:
    """Update display name and/or employee linkage."""
    old = {"display_name": principal.display_name, "employee_ref": principal.employee_ref}

    if display_name is not None:
        principal.display_name = display_name
    if clear_employee_ref:
        principal.employee_ref = None
    elif employee_ref is not None:
        principal.employee_ref = employee_ref

    new = {"display_name": principal.display_name, "employee_ref": principal.employee_ref}
    if new == old:
        return principal

    record_audit_entry(
        db, ctx, "principal_updated", "principal", principal.id,
        module=USER_MANAGEMENT_MODULE, changes={"old": old, "new": new},
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Employee reference is already linked to another principal", count=1) from None
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Failed to update principal %s", principal.id, exc_info=True)
        raise StoreFailure() from e
    return principal


async def set_principal_status(
    db: AsyncSession,
    principal_id: str,
    status: PrincipalStatus,
    ctx: AuditContext,
) -> Principal:
    """
    Activate, deactivate or suspend a principal.

    Role assignments are kept; the principal simply cannot authenticate while
    not active.
    """
    if principal_id == ctx.actor_id and status != PrincipalStatus.ACTIVE:
        raise Forbidden("Cannot deactivate your own account")

    principal = await get_principal(db, principal_id)
    if principal.status == status:
        return principal

    old_status = principal.status
    principal.status = status
    record_audit_entry(
        db, ctx, "principal_status_changed", "principal", principal.id,
        module=USER_MANAGEMENT_MODULE,
        changes={"old": {"status": old_status.value}, "new": {"status": status.value}},
    )
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Failed to change status of principal %s", principal_id, exc_info=True)
        raise StoreFailure() from e
    return principal


async def list_principals(
    db: AsyncSession,
    status: Optional[PrincipalStatus] = None,
    role_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[Principal], int]:
    stmt = select(Principal)
    if status is not None:
        stmt = stmt.where(Principal.status == status)
    if role_id:
        stmt = stmt.where(
            Principal.id.in_(
                select(RoleAssignment.principal_id).where(
                    RoleAssignment.role_id == role_id, live_assignment_clause()
                )
            )
        )

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    result = await db.execute(stmt.order_by(Principal.created_at, Principal.id).offset(skip).limit(limit))
    return list(result.scalars().all()), total
