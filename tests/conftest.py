"""
Shared fixtures: an in-memory arena, a seeded namespace and an HTTP client
for the legacy service.
"""
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from objdb.auth import Identity
from objdb.cache import Cache, flush_schema_changes
from objdb.database import create_tables, enable_sqlite_savepoints, get_session
from objdb.namespaces import create_namespace

NAMESPACE = "demo"
ADMIN_LOGIN = "admin"
ADMIN_PASSWORD = "secret1"


@pytest.fixture
async def engine():
    """Fresh in-memory SQLite arena per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def demo(async_session):
    """The ``demo`` namespace with its system rows; returns the admin user id."""
    admin_id = await create_namespace(async_session, NAMESPACE, ADMIN_LOGIN, ADMIN_PASSWORD)
    await async_session.commit()
    return admin_id


@pytest.fixture
def cache():
    return Cache(enabled=False)


@pytest.fixture
def admin_identity(demo):
    return Identity(namespace=NAMESPACE, user_id=demo, username=ADMIN_LOGIN, role="admin")


@pytest.fixture
def user_identity(demo):
    return Identity(namespace=NAMESPACE, user_id=demo, username="bob", role="user")


@pytest.fixture
async def client(session_maker, demo):
    """HTTP client bound to the legacy app with the test arena behind it."""
    from services.legacy.main import app

    async def override_get_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await flush_schema_changes(session)

    app.dependency_overrides[get_session] = override_get_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def admin_token(client):
    """Log the administrator in and return the opaque session token."""
    response = await client.post(
        f"/{NAMESPACE}/auth",
        params={"JSON": "1"},
        data={"login": ADMIN_LOGIN, "pwd": ADMIN_PASSWORD},
    )
    assert response.status_code == 200
    return response.json()["token"]


@pytest.fixture
def auth_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}
