"""
Session exchange routes.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.core.errors import Forbidden, Unauthorized
from app.features.permissions.bootstrap import ensure_initial_admin
from app.features.principals.schemas import PrincipalResponse
from app.features.principals.service import get_or_create_principal
from app.features.sessions.identity import get_identity_user, verify_identity_token
from app.features.sessions.middleware import set_session_cookie
from app.features.sessions.schemas import SessionCreate, SessionResponse
from app.features.sessions.store import IdentityStoreUnavailable, InvalidSession
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


@router.post("/session", response_model=SessionResponse)
async def create_session(
    body: SessionCreate,
    request: Request,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Exchange an Appwrite JWT for a session cookie.

    The principal is created on first authentication; if nobody holds the
    super role yet, the earliest principal is given it.
    """
    try:
        identity_id = verify_identity_token(body.token)
        user = await get_identity_user(identity_id)
    except InvalidSession as e:
        log.info("Rejected identity token: %s", e)
        raise Unauthorized() from None
    except IdentityStoreUnavailable:
        raise Unauthorized("Identity provider unavailable") from None

    email = user.get("email")
    if not email:
        raise Unauthorized("Identity has no email address")

    principal, created = await get_or_create_principal(db, identity_id, email, user.get("name") or None)
    if not principal.is_active:
        raise Forbidden("Account is not active")

    elevated = await ensure_initial_admin(db) if created else None

    token = request.app.state.session_store.issue(principal.id)
    set_session_cookie(response, token)
    log.info("Session started for principal %s", principal.id)
    return SessionResponse(
        principal=PrincipalResponse.model_validate(principal),
        expires_in=config.SESSION_TTL_SECONDS,
        bootstrapped_admin=elevated == principal.id,
    )


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Clear the session cookie."""
    auth = getattr(request.state, "auth", None)
    if auth is not None and auth.principal_id:
        log.info("Session ended for principal %s", auth.principal_id)
    response.delete_cookie(config.SESSION_COOKIE_NAME)
    return {"message": "Signed out"}
