"""
Authorization API routes.

Thin HTTP glue over the evaluator, the role lifecycle and the audit ledger.
Every endpoint declares the permission key it needs; mutations go through
``lifecycle`` only.
"""
from datetime import datetime
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.core.errors import InvalidInput
from app.core.limiter import limiter
from app.features.permissions import evaluator, lifecycle
from app.features.permissions.audit import AuditContext, list_audit_entries
from app.features.permissions.dependencies import audit_context, require_any_permission, require_permission
from app.features.permissions.keys import GLOBAL_SCOPE, PermissionKey, user_management
from app.features.permissions.models import Module, Permission, Role
from app.features.permissions.schemas import (
    AuditEntryListResponse,
    AuditEntryResponse,
    EffectivePermissionsResponse,
    ModuleAccessResponse,
    ModuleCreate,
    ModulePermissions,
    ModuleResponse,
    ModuleUpdate,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCreate,
    PermissionResponse,
    RoleAssignmentCreate,
    RoleAssignmentResult,
    RoleCreate,
    RoleDuplicate,
    RoleHolderResponse,
    RolePermissionsReplace,
    RoleResponse,
    RoleUpdate,
    RoleWithPermissions,
)
from app.features.principals.dependencies import get_current_principal
from app.features.principals.models import Principal
from app.utils import get_logger


log = get_logger(__name__)

module_router = APIRouter()
permission_router = APIRouter()
role_router = APIRouter()
assignment_router = APIRouter()
authz_router = APIRouter()
audit_router = APIRouter()

Db = Annotated[AsyncSession, Depends(get_db)]
Audit = Annotated[AuditContext, Depends(audit_context)]


# ============================================================================
# Module Routes
# ============================================================================

@module_router.get("", response_model=List[ModuleResponse])
async def list_modules(
    db: Db,
    _principal: Annotated[Principal, Depends(require_permission(user_management("permissions", "list")))],
):
    """List all modules, active or not."""
    result = await db.execute(select(Module).order_by(Module.name))
    return result.scalars().all()


@module_router.post("", response_model=ModuleResponse, status_code=status.HTTP_201_CREATED)
async def create_module(
    module: ModuleCreate,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("permissions", "create")))],
):
    return await lifecycle.create_module(
        db,
        module.name,
        module.display_name,
        ctx,
        description=module.description,
        base_route=module.base_route,
        requires_employee=module.requires_employee,
    )


@module_router.patch("/{name}", response_model=ModuleResponse)
async def update_module(
    name: str,
    update: ModuleUpdate,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("permissions", "update")))],
):
    """Activate or deactivate a module. Inactive modules grant nothing."""
    return await lifecycle.set_module_active(db, name, update.is_active, ctx)


# ============================================================================
# Permission Routes
# ============================================================================

@permission_router.get("", response_model=List[ModulePermissions])
async def list_permissions(
    db: Db,
    _principal: Annotated[Principal, Depends(require_permission(user_management("permissions", "list")))],
    module: Optional[str] = None,
):
    """List permissions grouped by module."""
    stmt = (
        select(Permission)
        .join(Module, Module.id == Permission.module_id)
        .order_by(Module.name, Permission.resource, Permission.action)
    )
    if module:
        stmt = stmt.where(Module.name == module)
    permissions = (await db.execute(stmt)).scalars().all()

    grouped: dict[str, ModulePermissions] = {}
    for permission in permissions:
        group = grouped.get(permission.module_name)
        if group is None:
            group = grouped[permission.module_name] = ModulePermissions(
                module=permission.module_name,
                display_name=permission.module.display_name,
                permissions=[],
            )
        group.permissions.append(PermissionResponse.model_validate(permission))
    return list(grouped.values())


@permission_router.post("", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("permissions", "create")))],
):
    """Create a new permission."""
    return await lifecycle.create_permission(db, permission.key, ctx, description=permission.description)


@permission_router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("permissions", "delete")))],
):
    """Delete a permission, removing it from every role that has it."""
    await lifecycle.delete_permission(db, permission_id, ctx)


# ============================================================================
# Role Routes
# ============================================================================

@role_router.get("", response_model=List[RoleResponse])
async def list_roles(
    db: Db,
    _principal: Annotated[Principal, Depends(require_permission(user_management("roles", "list")))],
    module: Optional[str] = Query(None, description="Module name; 'global' for roles without a module"),
):
    """List roles, highest priority first."""
    stmt = select(Role).order_by(Role.priority.desc(), Role.name)
    if module == GLOBAL_SCOPE:
        stmt = stmt.where(Role.module_id.is_(None))
    elif module:
        stmt = stmt.join(Module, Module.id == Role.module_id).where(Module.name == module)
    return (await db.execute(stmt)).scalars().all()


@role_router.post("", response_model=RoleWithPermissions, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("roles", "create")))],
):
    """Create a role. It starts with no permissions."""
    return await lifecycle.create_role(
        db,
        role.name,
        role.display_name,
        ctx,
        description=role.description,
        module_name=role.module,
        priority=role.priority,
    )


@role_router.get("/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    db: Db,
    _principal: Annotated[Principal, Depends(require_permission(user_management("roles", "read")))],
):
    return await lifecycle.get_role(db, role_id)


@role_router.patch("/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    update: RoleUpdate,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("roles", "update")))],
):
    """Update a role's descriptive fields. System roles cannot be modified."""
    # description may be cleared; the other fields are NOT NULL
    changes = {
        field: value
        for field, value in update.model_dump(exclude_unset=True).items()
        if value is not None or field == "description"
    }
    if not changes:
        raise InvalidInput("No fields to update")
    return await lifecycle.update_role(db, role_id, changes, ctx)


@role_router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("roles", "delete")))],
):
    """Delete a role nobody holds. System roles cannot be deleted."""
    await lifecycle.delete_role(db, role_id, ctx)


@role_router.put("/{role_id}/permissions", response_model=RoleWithPermissions)
async def replace_role_permissions(
    role_id: str,
    body: RolePermissionsReplace,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("roles", "update")))],
):
    """Set the role's permissions to exactly the given ids."""
    return await lifecycle.replace_role_permissions(db, role_id, body.permission_ids, ctx)


@role_router.post("/{role_id}/duplicate", response_model=RoleWithPermissions, status_code=status.HTTP_201_CREATED)
async def duplicate_role(
    role_id: str,
    body: RoleDuplicate,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("roles", "create")))],
):
    return await lifecycle.duplicate_role(db, role_id, body.name, ctx)


@role_router.get("/{role_id}/principals", response_model=List[RoleHolderResponse])
async def list_role_principals(
    role_id: str,
    db: Db,
    _principal: Annotated[Principal, Depends(require_any_permission([
        user_management("roles", "read"),
        user_management("users", "list"),
    ]))],
):
    """Principals currently holding the role."""
    return await lifecycle.list_role_principals(db, role_id)


# ============================================================================
# Assignment Routes
# ============================================================================

@assignment_router.post("", response_model=RoleAssignmentResult)
async def assign_role(
    body: RoleAssignmentCreate,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("users", "update")))],
):
    """Assign a role. Re-assigning a role the principal already holds succeeds."""
    changed = await lifecycle.assign_role(
        db, body.principal_id, body.role_id, ctx, expires_at=body.expires_at, details=body.details
    )
    return RoleAssignmentResult(principal_id=body.principal_id, role_id=body.role_id, changed=changed)


@assignment_router.delete("/{principal_id}/{role_id}", response_model=RoleAssignmentResult)
async def revoke_role(
    principal_id: str,
    role_id: str,
    db: Db,
    ctx: Audit,
    _principal: Annotated[Principal, Depends(require_permission(user_management("users", "update")))],
):
    """Revoke a role. Revoking a role the principal does not hold succeeds."""
    changed = await lifecycle.revoke_role(db, principal_id, role_id, ctx)
    return RoleAssignmentResult(principal_id=principal_id, role_id=role_id, changed=changed)


# ============================================================================
# Authorization Check Routes
# ============================================================================

@authz_router.post("/check", response_model=PermissionCheckResponse)
@limiter.limit(config.CHECK_RATE_LIMIT)
async def check_permissions(
    request: Request,
    body: PermissionCheckRequest,
    db: Db,
    principal: Annotated[Principal, Depends(get_current_principal)],
):
    """Check permission keys for the calling principal."""
    keys = [PermissionKey.parse(value) for value in body.permissions]
    granted = await evaluator.list_permissions(db, principal.id)
    return PermissionCheckResponse(results={str(key): key in granted for key in keys})


@authz_router.get("/me/permissions", response_model=EffectivePermissionsResponse)
async def get_my_permissions(
    db: Db,
    principal: Annotated[Principal, Depends(get_current_principal)],
):
    """The calling principal's effective permissions and live roles."""
    granted = await evaluator.list_permissions(db, principal.id)
    roles = await evaluator.list_principal_roles(db, principal.id)
    return EffectivePermissionsResponse(
        principal_id=principal.id,
        permissions=sorted(str(key) for key in granted),
        roles=[RoleResponse.model_validate(role) for role in roles],
    )


@authz_router.get("/me/modules/{name}", response_model=ModuleAccessResponse)
async def get_my_module_access(
    name: str,
    db: Db,
    principal: Annotated[Principal, Depends(get_current_principal)],
):
    allowed = await evaluator.can_access_module(db, principal.id, name)
    return ModuleAccessResponse(module=name, allowed=allowed)


# ============================================================================
# Audit Log Routes
# ============================================================================

@audit_router.get("", response_model=AuditEntryListResponse)
async def get_audit_logs(
    db: Db,
    _principal: Annotated[Principal, Depends(require_permission(user_management("audit", "read")))],
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """Query the audit ledger, newest first."""
    entries, total = await list_audit_entries(
        db,
        actor_id=actor_id,
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        since=since,
        until=until,
        skip=skip,
        limit=limit,
    )
    return AuditEntryListResponse(
        items=[AuditEntryResponse.model_validate(entry) for entry in entries],
        total=total,
        skip=skip,
        limit=limit,
    )
