"""
Principal feature routes.
"""
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.audit import AuditContext
from app.features.permissions.dependencies import audit_context, require_permission
from app.features.permissions.keys import user_management
from app.features.principals import service
from app.features.principals.dependencies import get_current_principal
from app.features.principals.models import Principal, PrincipalStatus
from app.features.principals.schemas import (
    PrincipalAdminUpdate,
    PrincipalListResponse,
    PrincipalResponse,
    PrincipalStatusUpdate,
    PrincipalUpdate,
)


router = APIRouter()


@router.get("/me", response_model=PrincipalResponse)
async def get_current_principal_profile(
    principal: Annotated[Principal, Depends(get_current_principal)]
):
    """Get the authenticated principal's profile."""
    return principal


@router.patch("/me", response_model=PrincipalResponse)
async def update_current_principal_profile(
    update_data: PrincipalUpdate,
    principal: Annotated[Principal, Depends(get_current_principal)],
    ctx: Annotated[AuditContext, Depends(audit_context)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Update the display name. Employee linkage is managed by administrators."""
    return await service.update_profile(db, principal, ctx, display_name=update_data.display_name)


@router.get("", response_model=PrincipalListResponse)
async def list_principals(
    db: Annotated[AsyncSession, Depends(get_db)],
    _principal: Annotated[Principal, Depends(require_permission(user_management("users", "list")))],
    status: Optional[PrincipalStatus] = None,
    role_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List principals, optionally only those with a status or holding a role."""
    principals, total = await service.list_principals(db, status=status, role_id=role_id, skip=skip, limit=limit)
    return PrincipalListResponse(
        items=[PrincipalResponse.model_validate(p) for p in principals],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.patch("/{principal_id}/status", response_model=PrincipalResponse)
async def update_principal_status(
    principal_id: str,
    body: PrincipalStatusUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    ctx: Annotated[AuditContext, Depends(audit_context)],
    _principal: Annotated[Principal, Depends(require_permission(user_management("users", "update")))],
):
    """Activate, deactivate or suspend a principal. You cannot deactivate yourself."""
    return await service.set_principal_status(db, principal_id, body.status, ctx)


@router.patch("/{principal_id}", response_model=PrincipalResponse)
async def update_principal(
    principal_id: str,
    update_data: PrincipalAdminUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    ctx: Annotated[AuditContext, Depends(audit_context)],
    _principal: Annotated[Principal, Depends(require_permission(user_management("users", "update")))],
):
    """Update another principal's display name or employee linkage."""
    principal = await service.get_principal(db, principal_id)
    return await service.update_profile(
        db,
        principal,
        ctx,
        display_name=update_data.display_name,
        employee_ref=update_data.employee_ref,
        clear_employee_ref=update_data.clear_employee_ref,
    )
