"""
Session gate.

Runs once per request, before routing:

1. assigns a request id (logging context and ``X-Request-Id`` header)
2. resolves the principal from the session cookie or bearer token,
   refreshing the token when it is close to expiry
3. stores an ``AuthContext`` on ``request.state.auth``
4. denies anonymous callers on protected path prefixes

The gate establishes who is calling, never what they may do. Identity-store
failures degrade the caller to anonymous; they never fail the request.
"""
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple
from urllib.parse import quote

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp

from app.core import config
from app.core.database.base import generate_ulid
from app.core.errors import Unauthorized
from app.features.sessions.store import IdentityStoreUnavailable, InvalidSession, SessionStore
from app.utils import get_logger, request_id_var


log = get_logger(__name__)

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


@dataclass(frozen=True)
class AuthContext:
    principal_id: Optional[str]
    session_id: Optional[str]
    request_id: str

    @property
    def is_authenticated(self) -> bool:
        return self.principal_id is not None


def is_protected_path(path: str, prefixes: Iterable[str]) -> bool:
    """Match prefixes on path-segment boundaries: /hr covers /hr and /hr/x, not /hrm."""
    path = path.rstrip("/") or "/"
    return any(path == prefix or path.startswith(prefix + "/") for prefix in prefixes)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        config.SESSION_COOKIE_NAME,
        token,
        max_age=config.SESSION_TTL_SECONDS,
        httponly=True,
        secure=config.SESSION_COOKIE_SECURE,
        samesite="lax",
    )


def get_session_token(request: Request) -> Optional[str]:
    token = request.cookies.get(config.SESSION_COOKIE_NAME)
    if token:
        return token
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


class SessionGateMiddleware(BaseHTTPMiddleware):
    """
    The session store is read from ``app.state.session_store`` on each
    request so it can be swapped without rebuilding the middleware stack.
    """

    def __init__(
        self,
        app: ASGIApp,
        protected_prefixes: Optional[Iterable[str]] = None,
        login_url: Optional[str] = config.LOGIN_URL,
        slow_request_ms: int = config.SLOW_REQUEST_MS,
    ):
        super().__init__(app)
        self.protected_prefixes = list(
            config.PROTECTED_PATH_PREFIXES if protected_prefixes is None else protected_prefixes
        )
        self.login_url = login_url
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = generate_ulid()
        context_token = request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            store: SessionStore = request.app.state.session_store
            principal_id, session_id, refreshed_token = await self.resolve(store, request)
            request.state.auth = AuthContext(principal_id, session_id, request_id)

            if principal_id is None and is_protected_path(request.url.path, self.protected_prefixes):
                log.warning("Denied anonymous access to %s %s", request.method, request.url.path)
                response = self.deny(request)
            else:
                response = await call_next(request)

            if refreshed_token:
                set_session_cookie(response, refreshed_token)
            for header, value in SECURITY_HEADERS.items():
                response.headers.setdefault(header, value)
            response.headers["X-Request-Id"] = request_id

            elapsed_ms = (time.perf_counter() - started) * 1000
            if elapsed_ms > self.slow_request_ms:
                log.warning("Slow request: %s %s took %.0fms", request.method, request.url.path, elapsed_ms)
            return response
        finally:
            request_id_var.reset(context_token)

    async def resolve(self, store: SessionStore, request: Request) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """
        Returns:
            (principal_id, session_id, refreshed_token); all None for anonymous
        """
        token = get_session_token(request)
        if not token:
            return None, None, None

        try:
            info = await store.validate_session(token)
            if not info.needs_refresh():
                return info.principal_id, info.session_id, None
            refreshed = await store.refresh_session(token)
            return info.principal_id, info.session_id, refreshed
        except InvalidSession as e:
            log.info("Rejected session credential: %s", e)
        except IdentityStoreUnavailable:
            log.warning("Identity store unavailable; treating caller as anonymous", exc_info=True)
        except Exception:
            log.exception("Unexpected session gate failure; treating caller as anonymous")
        return None, None, None

    def deny(self, request: Request) -> Response:
        if self.login_url and "text/html" in request.headers.get("accept", ""):
            target = f"{self.login_url}?next={quote(request.url.path)}"
            return RedirectResponse(target, status_code=303)
        return JSONResponse(
            Unauthorized().to_dict(),
            status_code=Unauthorized.status_code,
            headers={"WWW-Authenticate": "Bearer"},
        )
