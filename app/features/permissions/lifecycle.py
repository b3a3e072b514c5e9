"""
Role lifecycle: the only entry points that mutate roles, role permissions,
assignments, permissions and modules.

Each operation validates its invariants, applies the change and records one
audit entry in a single commit. Store errors roll back and surface as
StoreFailure; nothing is committed partially.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import with_deadline
from app.core.errors import Conflict, Forbidden, InvalidInput, NotFound, StoreFailure
from app.features.permissions.audit import AuditContext, record_audit_entry
from app.features.permissions.evaluator import live_assignment_clause
from app.features.permissions.keys import (
    GLOBAL_SCOPE,
    SUPER_ADMIN_ROLE,
    USER_MANAGEMENT_MODULE,
    PermissionKey,
    validate_name,
)
from app.features.permissions.models import Module, Permission, Role, RoleAssignment, role_permissions
from app.features.principals.models import Principal
from app.utils import ensure_utc, get_logger, utcnow


log = get_logger(__name__)

# Fields administrators may change on non-system roles
EDITABLE_ROLE_FIELDS = ("display_name", "description", "priority")


@dataclass(frozen=True)
class RoleHolder:
    principal: Principal
    assigned_at: datetime
    expires_at: Optional[datetime]


# ============================================================================
# Helpers
# ============================================================================

async def _commit(db: AsyncSession, operation: str) -> None:
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure during %s", operation, exc_info=True)
        raise StoreFailure() from e


async def _read(db: AsyncSession, stmt, operation: str):
    try:
        return await db.execute(stmt)
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure during %s", operation, exc_info=True)
        raise StoreFailure() from e


async def get_role(db: AsyncSession, role_id: str) -> Role:
    result = await _read(db, select(Role).where(Role.id == role_id), "get_role")
    role = result.scalars().first()
    if role is None:
        raise NotFound("Role not found")
    return role


async def get_module_by_name(db: AsyncSession, name: str) -> Module:
    result = await _read(db, select(Module).where(Module.name == name), "get_module")
    module = result.scalars().first()
    if module is None:
        raise NotFound(f"Module '{name}' not found")
    return module


async def _role_permission_ids(db: AsyncSession, role_id: str) -> set[str]:
    result = await _read(
        db,
        select(role_permissions.c.permission_id).where(role_permissions.c.role_id == role_id),
        "role_permission_ids",
    )
    return set(result.scalars().all())


async def _role_name_taken(db: AsyncSession, name: str, module_id: Optional[str]) -> bool:
    # NULL module ids never collide in a unique index, so global roles are checked here
    stmt = select(func.count()).select_from(Role).where(Role.name == name)
    if module_id is None:
        stmt = stmt.where(Role.module_id.is_(None))
    else:
        stmt = stmt.where(Role.module_id == module_id)
    return ((await _read(db, stmt, "role_name_taken")).scalar() or 0) > 0


def _role_snapshot(role: Role) -> Dict[str, Any]:
    return {
        "name": role.name,
        "display_name": role.display_name,
        "description": role.description,
        "module": role.module_name,
        "is_system": role.is_system,
        "priority": role.priority,
    }


def _is_super_role(role: Role) -> bool:
    return role.is_system and role.module_id is None and role.name == SUPER_ADMIN_ROLE


async def _super_role_keeps_permissions(db: AsyncSession, excluded_module_id: str) -> bool:
    stmt = (
        select(func.count())
        .select_from(role_permissions)
        .join(Role, Role.id == role_permissions.c.role_id)
        .join(Permission, Permission.id == role_permissions.c.permission_id)
        .join(Module, Module.id == Permission.module_id)
        .where(
            Role.name == SUPER_ADMIN_ROLE,
            Role.module_id.is_(None),
            Role.is_system.is_(True),
            Module.is_active.is_(True),
            Module.id != excluded_module_id,
        )
    )
    return ((await _read(db, stmt, "set_module_active")).scalar() or 0) > 0


# ============================================================================
# Modules and permissions
# ============================================================================

@with_deadline(StoreFailure)
async def create_module(
    db: AsyncSession,
    name: str,
    display_name: str,
    ctx: AuditContext,
    description: Optional[str] = None,
    base_route: Optional[str] = None,
    requires_employee: bool = False,
    is_active: bool = True,
) -> Module:
    validate_name(name, "module name")
    if name == GLOBAL_SCOPE:
        raise InvalidInput(f"'{GLOBAL_SCOPE}' is reserved for roles without a module")
    existing = (await _read(db, select(Module).where(Module.name == name), "create_module")).scalars().first()
    if existing is not None:
        raise Conflict(f"Module '{name}' already exists", count=1)

    module = Module(
        name=name,
        display_name=display_name,
        description=description,
        base_route=base_route,
        requires_employee=requires_employee,
        is_active=is_active,
    )
    db.add(module)
    try:
        await db.flush()
        record_audit_entry(
            db, ctx, "module_created", "module", module.id, module=name,
            changes={"name": name, "requires_employee": requires_employee, "is_active": is_active},
        )
        await _commit(db, "create_module")
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Module '{name}' already exists", count=1) from None
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure while creating %s", name, exc_info=True)
        raise StoreFailure() from e
    return module


@with_deadline(StoreFailure)
async def set_module_active(db: AsyncSession, name: str, is_active: bool, ctx: AuditContext) -> Module:
    """
    Switch a module on or off.

    Raises:
        Forbidden: deactivating the user management module, or a module
            holding the last active permissions of the super role; either
            would leave no one able to switch it back on
    """
    module = await get_module_by_name(db, name)
    if module.is_active == is_active:
        return module

    if not is_active:
        if name == USER_MANAGEMENT_MODULE:
            raise Forbidden(f"Cannot deactivate the {USER_MANAGEMENT_MODULE} module")
        if not await _super_role_keeps_permissions(db, module.id):
            raise Forbidden(f"Deactivating '{name}' would leave the {SUPER_ADMIN_ROLE} role without permissions")

    module.is_active = is_active
    record_audit_entry(
        db, ctx, "module_activated" if is_active else "module_deactivated", "module", module.id,
        module=name, changes={"old": {"is_active": not is_active}, "new": {"is_active": is_active}},
    )
    await _commit(db, "set_module_active")
    return module


@with_deadline(StoreFailure)
async def create_permission(
    db: AsyncSession,
    key: PermissionKey,
    ctx: AuditContext,
    description: Optional[str] = None,
) -> Permission:
    module = await get_module_by_name(db, key.module)
    duplicate = await _read(
        db,
        select(Permission.id).where(
            Permission.module_id == module.id,
            Permission.resource == key.resource,
            Permission.action == key.action,
        ),
        "create_permission",
    )
    if duplicate.first() is not None:
        raise Conflict(f"Permission {key} already exists", count=1)

    permission = Permission(module_id=module.id, resource=key.resource, action=key.action, description=description)
    permission.module = module
    db.add(permission)
    try:
        await db.flush()
        record_audit_entry(
            db, ctx, "permission_created", "permission", permission.id, module=key.module,
            changes={"key": str(key), "description": description},
        )
        await _commit(db, "create_permission")
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Permission {key} already exists", count=1) from None
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure while creating %s", key, exc_info=True)
        raise StoreFailure() from e
    return permission


@with_deadline(StoreFailure)
async def delete_permission(db: AsyncSession, permission_id: str, ctx: AuditContext) -> None:
    """Delete a permission and revoke it from every role that carries it."""
    result = await _read(db, select(Permission).where(Permission.id == permission_id), "delete_permission")
    permission = result.scalars().first()
    if permission is None:
        raise NotFound("Permission not found")

    holders = await _read(
        db,
        select(Role).join(role_permissions, role_permissions.c.role_id == Role.id)
        .where(role_permissions.c.permission_id == permission_id),
        "delete_permission",
    )
    affected_roles = list(holders.scalars().all())

    for role in affected_roles:
        if _is_super_role(role) and await _role_permission_ids(db, role.id) == {permission_id}:
            raise Forbidden(f"Cannot remove the last permission of the {SUPER_ADMIN_ROLE} role")

    key = permission.key
    try:
        await db.execute(delete(role_permissions).where(role_permissions.c.permission_id == permission_id))
        await db.delete(permission)
        record_audit_entry(
            db, ctx, "permission_deleted", "permission", permission_id, module=key.module,
            changes={"key": str(key), "revoked_from": sorted(role.id for role in affected_roles)},
        )
        await _commit(db, "delete_permission")
    except IntegrityError as e:
        await db.rollback()
        log.error("Integrity error deleting permission %s", permission_id, exc_info=True)
        raise StoreFailure() from e
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure during delete_permission", exc_info=True)
        raise StoreFailure() from e


# ============================================================================
# Roles
# ============================================================================

@with_deadline(StoreFailure)
async def create_role(
    db: AsyncSession,
    name: str,
    display_name: str,
    ctx: AuditContext,
    description: Optional[str] = None,
    module_name: Optional[str] = None,
    priority: int = 0,
    is_system: bool = False,
) -> Role:
    """
    Create a role with an empty permission set.

    Raises:
        InvalidInput: bad name format
        NotFound: unknown module
        Conflict: (name, module) already taken
    """
    validate_name(name, "role name")
    module = await get_module_by_name(db, module_name) if module_name else None
    module_id = module.id if module else None

    if await _role_name_taken(db, name, module_id):
        raise Conflict(f"Role '{name}' already exists in this scope", count=1)

    role = Role(
        name=name,
        display_name=display_name,
        description=description,
        module_id=module_id,
        priority=priority,
        is_system=is_system,
    )
    role.module = module
    db.add(role)
    try:
        await db.flush()
        record_audit_entry(
            db, ctx, "role_created", "role", role.id,
            module=module_name or USER_MANAGEMENT_MODULE,
            changes={"new": _role_snapshot(role)},
        )
        await _commit(db, "create_role")
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Role '{name}' already exists in this scope", count=1) from None
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure while creating %s", name, exc_info=True)
        raise StoreFailure() from e

    await db.refresh(role, ["permissions"])
    return role


@with_deadline(StoreFailure)
async def update_role(db: AsyncSession, role_id: str, changes: Dict[str, Any], ctx: AuditContext) -> Role:
    """
    Update descriptive fields of a non-system role.

    System roles are fully locked. Name, module and the system flag are never
    editable.
    """
    role = await get_role(db, role_id)
    if role.is_system:
        raise Forbidden("Cannot modify system roles")

    unknown = set(changes) - set(EDITABLE_ROLE_FIELDS)
    if unknown:
        raise InvalidInput(f"Fields cannot be changed: {', '.join(sorted(unknown))}")

    old = {field: getattr(role, field) for field in changes}
    for field, value in changes.items():
        setattr(role, field, value)

    record_audit_entry(
        db, ctx, "role_updated", "role", role.id,
        module=role.module_name or USER_MANAGEMENT_MODULE,
        changes={"old": old, "new": dict(changes)},
    )
    await _commit(db, "update_role")
    return role


@with_deadline(StoreFailure)
async def delete_role(db: AsyncSession, role_id: str, ctx: AuditContext) -> None:
    """
    Delete a role and its permission rows.

    Raises:
        NotFound: unknown role
        Forbidden: system role (whatever its assignments)
        Conflict: principals still hold the role; ``count`` is how many
    """
    role = await get_role(db, role_id)
    if role.is_system:
        raise Forbidden("Cannot delete system roles")

    # Expired assignments still reference the row, so they block deletion too
    count_result = await _read(
        db,
        select(func.count()).select_from(RoleAssignment).where(RoleAssignment.role_id == role_id),
        "delete_role",
    )
    holders = count_result.scalar() or 0
    if holders:
        raise Conflict(f"Cannot delete role. {holders} principal(s) have this role assigned.", count=holders)

    snapshot = _role_snapshot(role)
    permission_ids = await _role_permission_ids(db, role_id)
    try:
        await db.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
        await db.delete(role)
        record_audit_entry(
            db, ctx, "role_deleted", "role", role_id,
            module=snapshot["module"] or USER_MANAGEMENT_MODULE,
            changes={"old": snapshot, "permission_ids": sorted(permission_ids)},
        )
        await _commit(db, "delete_role")
    except IntegrityError as e:
        await db.rollback()
        # An assignment landed between the count and the delete
        count_result = await _read(
            db,
            select(func.count()).select_from(RoleAssignment).where(RoleAssignment.role_id == role_id),
            "delete_role",
        )
        holders = count_result.scalar() or 0
        if not holders:
            log.error("Integrity error deleting role %s with no assignments", role_id, exc_info=True)
            raise StoreFailure() from e
        raise Conflict(f"Cannot delete role. {holders} principal(s) have this role assigned.", count=holders) from e
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure during delete_role", exc_info=True)
        raise StoreFailure() from e


@with_deadline(StoreFailure)
async def replace_role_permissions(
    db: AsyncSession,
    role_id: str,
    permission_ids: Iterable[str],
    ctx: AuditContext,
) -> Role:
    """
    Make the role's permission set exactly ``permission_ids``.

    Additions and removals are applied in one transaction, so concurrent
    readers observe either the old set or the new one.
    """
    role = await get_role(db, role_id)
    target = set(permission_ids)

    if _is_super_role(role) and not target:
        raise Forbidden(f"Cannot remove all permissions from the {SUPER_ADMIN_ROLE} role")

    if target:
        result = await _read(
            db, select(Permission.id, Permission.module_id).where(Permission.id.in_(target)), "replace_role_permissions"
        )
        found = dict(result.all())
        missing = target - set(found)
        if missing:
            raise NotFound(f"Unknown permission(s): {', '.join(sorted(missing))}")
        if role.module_id is not None:
            foreign = sorted(pid for pid, module_id in found.items() if module_id != role.module_id)
            if foreign:
                raise InvalidInput(
                    f"Role '{role.name}' is scoped to one module; permission(s) from other modules: {', '.join(foreign)}"
                )

    current = await _role_permission_ids(db, role_id)
    to_add = sorted(target - current)
    to_remove = sorted(current - target)

    try:
        if to_remove:
            await db.execute(
                delete(role_permissions).where(
                    role_permissions.c.role_id == role_id,
                    role_permissions.c.permission_id.in_(to_remove),
                )
            )
        if to_add:
            await db.execute(
                insert(role_permissions),
                [{"role_id": role_id, "permission_id": pid, "granted_at": utcnow()} for pid in to_add],
            )
        record_audit_entry(
            db, ctx, "role_permissions_updated", "role", role_id,
            module=role.module_name or USER_MANAGEMENT_MODULE,
            changes={
                "added": to_add,
                "removed": to_remove,
                "total": len(target),
                "changed": bool(to_add or to_remove),
            },
        )
        await _commit(db, "replace_role_permissions")
    except IntegrityError as e:
        await db.rollback()
        # A concurrent replace won the race; our view of the current set was stale
        log.warning("Concurrent permission update on role %s", role_id)
        raise StoreFailure("Role permissions changed concurrently; retry") from e
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure during replace_role_permissions", exc_info=True)
        raise StoreFailure() from e

    await db.refresh(role, ["permissions"])
    return role


@with_deadline(StoreFailure)
async def duplicate_role(db: AsyncSession, role_id: str, new_name: str, ctx: AuditContext) -> Role:
    """Copy a role (scope, priority, permissions) under a new, non-system name."""
    original = await get_role(db, role_id)
    validate_name(new_name, "role name")
    if await _role_name_taken(db, new_name, original.module_id):
        raise Conflict(f"Role '{new_name}' already exists in this scope", count=1)

    permission_ids = sorted(await _role_permission_ids(db, role_id))
    role = Role(
        name=new_name,
        display_name=f"{original.display_name} (Copy)",
        description=original.description,
        module_id=original.module_id,
        priority=original.priority,
        is_system=False,
    )
    role.module = original.module
    db.add(role)
    try:
        await db.flush()
        if permission_ids:
            await db.execute(
                insert(role_permissions),
                [{"role_id": role.id, "permission_id": pid, "granted_at": utcnow()} for pid in permission_ids],
            )
        record_audit_entry(
            db, ctx, "role_duplicated", "role", role.id,
            module=original.module_name or USER_MANAGEMENT_MODULE,
            changes={"original_role_id": role_id, "new": _role_snapshot(role), "permission_ids": permission_ids},
        )
        await _commit(db, "duplicate_role")
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Role '{new_name}' already exists in this scope", count=1) from None
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure while creating %s", new_name, exc_info=True)
        raise StoreFailure() from e

    await db.refresh(role, ["permissions"])
    return role


async def list_role_principals(db: AsyncSession, role_id: str) -> List[RoleHolder]:
    """Principals currently holding a role."""
    await get_role(db, role_id)
    result = await _read(
        db,
        select(Principal, RoleAssignment.assigned_at, RoleAssignment.expires_at)
        .join(RoleAssignment, RoleAssignment.principal_id == Principal.id)
        .where(RoleAssignment.role_id == role_id, live_assignment_clause())
        .order_by(RoleAssignment.assigned_at),
        "list_role_principals",
    )
    return [
        RoleHolder(principal=principal, assigned_at=ensure_utc(assigned_at), expires_at=ensure_utc(expires_at))
        for principal, assigned_at, expires_at in result.all()
    ]


# ============================================================================
# Assignments
# ============================================================================

def assignment_upsert(dialect_name: str, values: Dict[str, Any]):
    """INSERT ... ON CONFLICT (principal_id, role_id) DO UPDATE; last write wins."""
    if dialect_name == "postgresql":
        stmt = postgresql.insert(RoleAssignment).values(**values)
    elif dialect_name == "sqlite":
        stmt = sqlite.insert(RoleAssignment).values(**values)
    else:
        raise NotImplementedError(f"Role assignment upsert not supported on {dialect_name}")
    return stmt.on_conflict_do_update(
        index_elements=[RoleAssignment.principal_id, RoleAssignment.role_id],
        set_={
            "assigned_by_id": stmt.excluded.assigned_by_id,
            "assigned_at": stmt.excluded.assigned_at,
            "expires_at": stmt.excluded.expires_at,
            "details": stmt.excluded.details,
        },
    )


@with_deadline(StoreFailure)
async def assign_role(
    db: AsyncSession,
    principal_id: str,
    role_id: str,
    ctx: AuditContext,
    expires_at: Optional[datetime] = None,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Give a principal a role. Idempotent.

    Re-assigning a live role with the same expiry is a no-op. Otherwise the
    assignment is upserted, so concurrent callers both succeed and leave a
    single row behind.

    Returns:
        True if state changed, False for a no-op
    """
    role = await get_role(db, role_id)
    principal = (await _read(db, select(Principal).where(Principal.id == principal_id), "assign_role")).scalars().first()
    if principal is None:
        raise NotFound("Principal not found")

    expires_at = ensure_utc(expires_at)
    now = utcnow()

    existing_result = await _read(
        db,
        select(RoleAssignment.expires_at).where(
            RoleAssignment.principal_id == principal_id, RoleAssignment.role_id == role_id
        ),
        "assign_role",
    )
    existing = existing_result.first()
    if existing is not None:
        current_expiry = ensure_utc(existing.expires_at)
        live = current_expiry is None or current_expiry > now
        if live and current_expiry == expires_at:
            log.debug("Principal %s already holds role %s", principal_id, role_id)
            return False

    values = {
        "principal_id": principal_id,
        "role_id": role_id,
        "assigned_by_id": ctx.actor_id,
        "assigned_at": now,
        "expires_at": expires_at,
        "details": details,
    }
    try:
        await db.execute(assignment_upsert(db.get_bind().dialect.name, values))
        record_audit_entry(
            db, ctx, "role_assigned", "role_assignment", principal_id,
            module=role.module_name or USER_MANAGEMENT_MODULE,
            changes={
                "role_id": role_id,
                "role_name": role.name,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "previous_expires_at": (
                    ensure_utc(existing.expires_at).isoformat() if existing is not None and existing.expires_at else None
                ),
                "renewed": existing is not None,
            },
        )
        await _commit(db, "assign_role")
    except IntegrityError as e:
        await db.rollback()
        # Role deleted or principal removed underneath us
        log.warning("Assignment of role %s to %s lost a race", role_id, principal_id)
        raise NotFound("Role or principal no longer exists") from e
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure during assign_role", exc_info=True)
        raise StoreFailure() from e
    return True


@with_deadline(StoreFailure)
async def revoke_role(db: AsyncSession, principal_id: str, role_id: str, ctx: AuditContext) -> bool:
    """
    Remove a role from a principal. Idempotent.

    Returns:
        True if an assignment was removed, False if there was none
    """
    role = await get_role(db, role_id)
    try:
        result = await db.execute(
            delete(RoleAssignment).where(
                RoleAssignment.principal_id == principal_id, RoleAssignment.role_id == role_id
            )
        )
        if not result.rowcount:
            await db.rollback()
            return False
        record_audit_entry(
            db, ctx, "role_revoked", "role_assignment", principal_id,
            module=role.module_name or USER_MANAGEMENT_MODULE,
            changes={"role_id": role_id, "role_name": role.name},
        )
        await _commit(db, "revoke_role")
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Store failure during revoke_role", exc_info=True)
        raise StoreFailure() from e
    return True
