"""
Test Configuration and Fixtures

Shared fixtures: an isolated in-memory database per test, seeded defaults,
principal factories and an HTTP client wired to the test database.
"""
import os

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from typing import AsyncGenerator, Callable, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.database.engine import enable_sqlite_foreign_keys, get_db, init_db  # noqa: E402
from app.features.permissions.audit import SYSTEM  # noqa: E402
from app.features.permissions.bootstrap import seed_defaults  # noqa: E402
from app.features.permissions.lifecycle import assign_role  # noqa: E402
from app.features.permissions.models import Permission, Role  # noqa: E402
from app.features.principals.models import Principal, PrincipalStatus  # noqa: E402
from app.features.sessions.store import SignedSessionStore  # noqa: E402


TEST_SECRET = "test-session-secret-0123456789abcdef"


# ==================== Database Fixtures ====================


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    await init_db(bind=engine)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def seeded(db_session) -> AsyncSession:
    """Database with default modules, permissions and system roles."""
    await seed_defaults(db_session)
    return db_session


# ==================== Principal Fixtures ====================


@pytest.fixture
def make_principal(db_session) -> Callable:
    """Factory creating committed principals."""
    counter = {"n": 0}

    async def _make(
        name: Optional[str] = None,
        employee_ref: Optional[str] = None,
        status: PrincipalStatus = PrincipalStatus.ACTIVE,
    ) -> Principal:
        counter["n"] += 1
        name = name or f"user{counter['n']}"
        principal = Principal(
            identity_id=f"identity-{name}",
            email=f"{name}@example.com",
            display_name=name.capitalize(),
            employee_ref=employee_ref,
            status=status,
        )
        db_session.add(principal)
        await db_session.commit()
        return principal

    return _make


async def get_role_by_name(db: AsyncSession, name: str) -> Role:
    result = await db.execute(select(Role).where(Role.name == name))
    return result.scalars().one()


async def get_permission_id(db: AsyncSession, module: str, resource: str, action: str) -> str:
    from app.features.permissions.models import Module

    result = await db.execute(
        select(Permission.id)
        .join(Module, Module.id == Permission.module_id)
        .where(Module.name == module, Permission.resource == resource, Permission.action == action)
    )
    return result.scalar_one()


@pytest_asyncio.fixture
async def admin(seeded, make_principal) -> Principal:
    """Principal holding super_admin."""
    principal = await make_principal("admin")
    role = await get_role_by_name(seeded, "super_admin")
    await assign_role(seeded, principal.id, role.id, SYSTEM)
    return principal


# ==================== Application Fixtures ====================


@pytest.fixture
def session_store(session_factory) -> SignedSessionStore:
    return SignedSessionStore(session_factory, secret=TEST_SECRET)


@pytest_asyncio.fixture
async def app(session_factory, session_store):
    """The application wired to the test database."""
    from app.main import app as application

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    previous_store = application.state.session_store
    application.dependency_overrides[get_db] = override_get_db
    application.state.session_store = session_store

    yield application

    application.dependency_overrides.clear()
    application.state.session_store = previous_store


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(session_store) -> Callable[[Principal], dict]:
    """Bearer headers carrying a fresh session for a principal."""
    def _headers(principal: Principal) -> dict:
        return {"Authorization": f"Bearer {session_store.issue(principal.id)}"}

    return _headers
