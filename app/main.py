from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import AsyncSessionLocal, init_db
from app.core.errors import AuthorizationError
from app.core.limiter import limiter
from app.features.permissions.bootstrap import ensure_initial_admin, seed_defaults
from app.features.permissions.routes import (
    assignment_router,
    audit_router,
    authz_router,
    module_router,
    permission_router,
    role_router,
)
from app.features.principals.routes import router as principal_router
from app.features.sessions.middleware import SessionGateMiddleware
from app.features.sessions.routes import router as session_router
from app.features.sessions.store import SignedSessionStore
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Rolegate",
    description="Module-scoped role-based authorization service",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter
app.state.session_store = SignedSessionStore(AsyncSessionLocal)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


# Added first so it runs inside timing and CORS
app.add_middleware(SessionGateMiddleware)
app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    if exc.status_code >= 500:
        log.error("%s on %s %s", exc.code, request.method, request.url.path)
    else:
        log.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, _exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "internal_error", "detail": "Internal server error"}, status_code=500)


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.on_event("startup")
async def startup():
    """Create tables, seed defaults and make sure an administrator exists."""
    log.info("Initializing database...")
    await init_db()
    async with AsyncSessionLocal() as db:
        await seed_defaults(db)
        elevated = await ensure_initial_admin(db)
    if elevated:
        log.warning("Bootstrapped initial administrator: %s", elevated)
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Rolegate API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Exchange an Appwrite JWT at POST /auth/session for a session cookie",
            "protected_prefixes": config.PROTECTED_PATH_PREFIXES,
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(session_router, prefix="/auth", tags=["auth"])
app.include_router(principal_router, prefix="/principals", tags=["principals"])

# Authorization routes (RBAC)
app.include_router(module_router, prefix="/modules", tags=["modules"])
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
app.include_router(role_router, prefix="/roles", tags=["roles"])
app.include_router(assignment_router, prefix="/assignments", tags=["assignments"])
app.include_router(authz_router, tags=["authorization"])
app.include_router(audit_router, prefix="/audit-logs", tags=["audit"])
