"""
Signed session tokens.

A session is an HS256 JWT carrying the principal id (``sub``), issue and
expiry times, and a session id (``sid``) that survives refreshes. Refresh
re-reads the principal so a deactivated account stops getting new tokens.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

import jwt
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.base import generate_ulid
from app.features.principals.models import Principal, PrincipalStatus
from app.utils import get_logger, utcnow


log = get_logger(__name__)

ALGORITHM = "HS256"


class InvalidSession(Exception):
    """Token is missing, malformed, expired or no longer refreshable."""


class IdentityStoreUnavailable(Exception):
    """The backing identity store could not be reached."""


@dataclass(frozen=True)
class SessionInfo:
    principal_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    # First issue time of the session, carried across refreshes
    authenticated_at: datetime

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.expires_at - now <= timedelta(seconds=config.SESSION_REFRESH_THRESHOLD_SECONDS)


class SessionStore(Protocol):
    async def validate_session(self, token: str) -> SessionInfo: ...

    async def refresh_session(self, token: str) -> str: ...


def _timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SignedSessionStore:
    """
    Session store backed by signed tokens and the principals table.

    Args:
        session_factory: Callable returning an AsyncSession context manager
        secret: HS256 signing key
        ttl_seconds: Lifetime of each issued token
        max_age_seconds: Absolute lifetime of a session across refreshes
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        secret: str = config.SESSION_SECRET,
        ttl_seconds: int = config.SESSION_TTL_SECONDS,
        max_age_seconds: int = config.SESSION_MAX_AGE_SECONDS,
    ):
        self.session_factory = session_factory
        self.secret = secret
        self.ttl_seconds = ttl_seconds
        self.max_age_seconds = max_age_seconds

    def issue(self, principal_id: str, session_id: Optional[str] = None, authenticated_at: Optional[datetime] = None) -> str:
        now = utcnow()
        payload = {
            "sub": principal_id,
            "sid": session_id or generate_ulid(),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.ttl_seconds)).timestamp()),
            "auth_time": int((authenticated_at or now).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def _decode(self, token: str, verify_exp: bool = True) -> SessionInfo:
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": verify_exp, "require": ["sub", "sid", "iat", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidSession("Session has expired") from None
        except jwt.InvalidTokenError as e:
            raise InvalidSession(f"Invalid session token: {e}") from None

        return SessionInfo(
            principal_id=payload["sub"],
            session_id=payload["sid"],
            issued_at=_timestamp(payload["iat"]),
            expires_at=_timestamp(payload["exp"]),
            authenticated_at=_timestamp(payload.get("auth_time", payload["iat"])),
        )

    async def validate_session(self, token: str) -> SessionInfo:
        """Verify signature and expiry."""
        return self._decode(token)

    async def refresh_session(self, token: str) -> str:
        """
        Issue a new token for the same session.

        Raises:
            InvalidSession: token is bad, past its absolute lifetime, or the
                principal is gone or not active
            IdentityStoreUnavailable: principals could not be read
        """
        info = self._decode(token)
        if utcnow() - info.authenticated_at > timedelta(seconds=self.max_age_seconds):
            raise InvalidSession("Session exceeded its maximum age")

        try:
            async with self.session_factory() as db:
                result = await db.execute(select(Principal.status).where(Principal.id == info.principal_id))
                status = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise IdentityStoreUnavailable("Principal lookup failed") from e

        if status is None:
            raise InvalidSession("Principal no longer exists")
        if status != PrincipalStatus.ACTIVE:
            raise InvalidSession("Principal is not active")

        log.debug("Refreshed session %s for principal %s", info.session_id, info.principal_id)
        return self.issue(info.principal_id, session_id=info.session_id, authenticated_at=info.authenticated_at)
