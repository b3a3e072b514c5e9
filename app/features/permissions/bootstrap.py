"""
Startup reconciliation: default modules, permissions and system roles, and
the first super administrator.

Both entry points are idempotent and run on every process start.
"""
from typing import Dict, List, Optional, Tuple

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import StoreFailure
from app.features.permissions.audit import SYSTEM, record_audit_entry
from app.features.permissions.evaluator import live_assignment_clause
from app.features.permissions.keys import SUPER_ADMIN_ROLE, USER_MANAGEMENT_MODULE
from app.features.permissions.lifecycle import assignment_upsert
from app.features.permissions.models import Module, Permission, Role, RoleAssignment, role_permissions
from app.features.principals.models import Principal, PrincipalStatus
from app.utils import get_logger, utcnow


log = get_logger(__name__)


# (name, display_name, description, base_route, requires_employee)
DEFAULT_MODULES = [
    (USER_MANAGEMENT_MODULE, "User Management", "Principals, roles and permissions", "/dashboard/users", False),
    ("hr", "Human Resources", "Employee records and payroll", "/hr", True),
    ("inventory", "Inventory", "Stock and warehouses", "/inventory", False),
    ("pos", "Point of Sale", "Sales terminals", "/pos", False),
    ("finance", "Finance", "Ledgers and reporting", "/finance", False),
]

DEFAULT_RESOURCES = ["users", "profiles", "roles", "permissions", "audit"]
DEFAULT_ACTIONS = ["create", "read", "update", "delete", "list"]

# (name, display_name, description, module, priority, grants as (resource, action) or "*")
DEFAULT_ROLES = [
    (SUPER_ADMIN_ROLE, "Super Administrator", "Full system access", None, 100, "*"),
    (
        "user_admin",
        "User Administrator",
        "Manages principals and their roles",
        USER_MANAGEMENT_MODULE,
        90,
        [(resource, action) for resource in ("users", "profiles", "roles") for action in DEFAULT_ACTIONS]
        + [("permissions", "read"), ("permissions", "list"), ("audit", "read"), ("audit", "list")],
    ),
    (
        "viewer",
        "Viewer",
        "Read-only access",
        None,
        10,
        [(resource, action) for resource in DEFAULT_RESOURCES for action in ("read", "list")],
    ),
]


async def seed_modules(db: AsyncSession) -> Dict[str, Module]:
    existing = {m.name: m for m in (await db.execute(select(Module))).scalars().all()}
    for name, display_name, description, base_route, requires_employee in DEFAULT_MODULES:
        if name in existing:
            continue
        module = Module(
            name=name,
            display_name=display_name,
            description=description,
            base_route=base_route,
            requires_employee=requires_employee,
        )
        db.add(module)
        existing[name] = module
        log.info("Created module: %s", name)
    await db.flush()
    return existing


async def seed_permissions(db: AsyncSession, modules: Dict[str, Module]) -> Dict[Tuple[str, str], Permission]:
    """Create the user_management permission grid."""
    module = modules[USER_MANAGEMENT_MODULE]
    result = await db.execute(select(Permission).where(Permission.module_id == module.id))
    existing = {(p.resource, p.action): p for p in result.scalars().all()}

    for resource in DEFAULT_RESOURCES:
        for action in DEFAULT_ACTIONS:
            if (resource, action) in existing:
                continue
            permission = Permission(
                module_id=module.id,
                resource=resource,
                action=action,
                description=f"{action.capitalize()} {resource}",
            )
            db.add(permission)
            existing[(resource, action)] = permission
            log.info("Created permission: %s:%s:%s", USER_MANAGEMENT_MODULE, resource, action)
    await db.flush()
    return existing


async def seed_roles(
    db: AsyncSession,
    modules: Dict[str, Module],
    permissions: Dict[Tuple[str, str], Permission],
) -> List[str]:
    """
    Create missing system roles with their grants.

    Grants are only written for roles created here; later administrator edits
    to a role's permission set are left alone.
    """
    created = []
    for name, display_name, description, module_name, priority, grants in DEFAULT_ROLES:
        module_id = modules[module_name].id if module_name else None
        stmt = select(Role).where(Role.name == name)
        stmt = stmt.where(Role.module_id == module_id) if module_id else stmt.where(Role.module_id.is_(None))
        if (await db.execute(stmt)).scalars().first() is not None:
            continue

        role = Role(
            name=name,
            display_name=display_name,
            description=description,
            module_id=module_id,
            priority=priority,
            is_system=True,
        )
        db.add(role)
        await db.flush()

        granted = list(permissions.values()) if grants == "*" else [permissions[grant] for grant in grants]
        now = utcnow()
        await db.execute(
            insert(role_permissions),
            [{"role_id": role.id, "permission_id": p.id, "granted_at": now} for p in granted],
        )
        created.append(name)
        log.info("Created system role: %s (%d permissions)", name, len(granted))
    return created


async def seed_defaults(db: AsyncSession) -> None:
    """Create default modules, permissions and system roles that are missing."""
    try:
        modules = await seed_modules(db)
        permissions = await seed_permissions(db, modules)
        created_roles = await seed_roles(db, modules, permissions)
        if created_roles:
            record_audit_entry(
                db, SYSTEM, "defaults_seeded", "role", module=USER_MANAGEMENT_MODULE,
                changes={"roles": created_roles},
            )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Seeding defaults failed", exc_info=True)
        raise StoreFailure() from e


async def ensure_initial_admin(db: AsyncSession) -> Optional[str]:
    """
    Give the super role to the earliest-created active principal when nobody
    holds it.

    Never touches an existing holder.

    Returns:
        The id of the elevated principal, or None if nothing changed
    """
    try:
        role = (
            await db.execute(select(Role).where(Role.name == SUPER_ADMIN_ROLE, Role.module_id.is_(None)))
        ).scalars().first()
        if role is None:
            log.warning("Role %s not found; skipping admin bootstrap", SUPER_ADMIN_ROLE)
            return None

        holder = await db.execute(
            select(RoleAssignment.principal_id)
            .where(RoleAssignment.role_id == role.id, live_assignment_clause())
            .limit(1)
        )
        if holder.first() is not None:
            return None

        first = (
            await db.execute(
                select(Principal.id)
                .where(Principal.status == PrincipalStatus.ACTIVE)
                .order_by(Principal.created_at, Principal.id)
                .limit(1)
            )
        ).scalar()
        if first is None:
            return None

        await db.execute(
            assignment_upsert(
                db.get_bind().dialect.name,
                {
                    "principal_id": first,
                    "role_id": role.id,
                    "assigned_by_id": first,
                    "assigned_at": utcnow(),
                    "expires_at": None,
                    "details": {"reason": "initial_admin"},
                },
            )
        )
        record_audit_entry(
            db, SYSTEM, "admin_bootstrapped", "role_assignment", first,
            module=USER_MANAGEMENT_MODULE,
            changes={"role_id": role.id, "role_name": SUPER_ADMIN_ROLE},
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("Admin bootstrap failed", exc_info=True)
        raise StoreFailure() from e

    log.info("Assigned %s to principal %s", SUPER_ADMIN_ROLE, first)
    return first
