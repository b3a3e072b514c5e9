"""
FastAPI dependencies for route protection.

Route code never evaluates permissions inline; it declares the key it needs
with ``require_permission`` and receives the principal once it is granted.
"""
from typing import Annotated, List

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import Forbidden
from app.features.permissions.audit import AuditContext
from app.features.permissions.evaluator import has_permission
from app.features.permissions.keys import PermissionKey
from app.features.principals.dependencies import get_current_principal
from app.features.principals.models import Principal
from app.utils import get_logger


log = get_logger(__name__)


def audit_context(
    request: Request,
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> AuditContext:
    """Actor and request metadata for audit entries."""
    return AuditContext(
        actor_id=principal.id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def require_permission(key: PermissionKey):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/roles")
        async def create_role(
            principal: Principal = Depends(require_permission(user_management("roles", "create")))
        ):
            ...

    Raises:
        Forbidden: 403 "Not permitted" if the principal lacks ``key``
        EvaluatorUnavailable: 503 if the decision could not be made
    """
    async def permission_dependency(
        request: Request,
        db: Annotated[AsyncSession, Depends(get_db)],
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if not await has_permission(db, principal.id, key):
            log.warning("Denied %s to principal %s on %s", key, principal.id, request.url.path)
            raise Forbidden()
        return principal

    return permission_dependency


def require_any_permission(keys: List[PermissionKey]):
    """Like ``require_permission``, granted if the principal holds any of ``keys``."""
    async def permission_dependency(
        request: Request,
        db: Annotated[AsyncSession, Depends(get_db)],
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        for key in keys:
            if await has_permission(db, principal.id, key):
                return principal
        log.warning("Denied any of %s to principal %s on %s", [str(k) for k in keys], principal.id, request.url.path)
        raise Forbidden()

    return permission_dependency
