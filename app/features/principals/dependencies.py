"""
FastAPI dependencies for the calling principal.
"""
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import EvaluatorUnavailable, Forbidden, Unauthorized
from app.features.principals.models import Principal
from app.utils import get_logger


log = get_logger(__name__)


def get_principal_id(request: Request) -> str:
    """Principal id established by the session gate, or 401."""
    auth = getattr(request.state, "auth", None)
    if auth is None or not auth.principal_id:
        raise Unauthorized()
    return auth.principal_id


async def get_current_principal(
    principal_id: Annotated[str, Depends(get_principal_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Principal:
    """
    Load the authenticated principal.

    Usage:
        @router.get("/me")
        async def get_me(principal: Principal = Depends(get_current_principal)):
            return principal
    """
    try:
        result = await db.execute(select(Principal).where(Principal.id == principal_id))
    except SQLAlchemyError as e:
        log.error("Failed to load principal %s", principal_id, exc_info=True)
        raise EvaluatorUnavailable() from e

    principal = result.scalar_one_or_none()
    if principal is None:
        raise Unauthorized()
    if not principal.is_active:
        raise Forbidden("Account is not active")
    return principal
