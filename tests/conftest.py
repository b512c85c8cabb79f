import socket
import uuid
from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, datetime, timedelta

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quota_ledger.core.config import settings
from quota_ledger.models.base import Base

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

# Test user ID (consistent across tests for predictable auth)
TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
ADMIN_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105


def create_test_jwt(
    user_id: uuid.UUID = TEST_USER_ID,
    *,
    secret: str = TEST_AUTH_SECRET,
    expires_delta: timedelta | None = None,
    iat: datetime | None = None,
) -> str:
    """Create a signed JWT for test authentication.

    Args:
        user_id: User UUID to encode in the sub claim.
        secret: Signing secret (must match settings.auth_secret in tests).
        expires_delta: Time until expiration. Defaults to 1 hour.
        iat: Issued-at time. Defaults to now.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": settings.auth_audience,
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": iat or now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on the configured port, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", settings.database_port))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available.

    Called by fixtures that require database connection.
    """
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            f"PostgreSQL not available on port {settings.database_port}. "
            "Start database with: docker compose up -d"
        )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine with a fresh schema.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Independent sessions on the test database (for concurrency tests)."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# =============================================================================
# API Test Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession):
    """Create a regular (non-admin) user in the database.

    Yields:
        User model instance.
    """
    from quota_ledger.models import User

    user = User(id=TEST_USER_ID, email="test@example.com")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    yield user


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession):
    """Create an admin user in the database.

    Yields:
        User model instance with is_admin=True.
    """
    from quota_ledger.models import User

    user = User(id=ADMIN_USER_ID, email="admin@example.com", is_admin=True)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    yield user


@pytest.fixture
def auth_settings() -> Iterator[None]:
    """Enable JWT auth with the test secret, restoring settings afterwards."""
    original_auth_enabled = settings.auth_enabled
    original_auth_secret = settings.auth_secret
    settings.auth_enabled = True
    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)

    yield

    settings.auth_enabled = original_auth_enabled
    settings.auth_secret = original_auth_secret


async def _db_client(
    db_engine, user_id: uuid.UUID | None
) -> AsyncGenerator[AsyncClient, None]:
    from quota_ledger.api.deps import get_service_cost_cache
    from quota_ledger.core.database import get_db
    from quota_ledger.main import app
    from quota_ledger.services.service_cost_cache import ServiceCostCache

    test_session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Override get_db to use test database
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with test_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    cache = ServiceCostCache(ttl_seconds=0)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_cost_cache] = lambda: cache

    cookies = {}
    if user_id is not None:
        cookies[settings.auth_cookie_name] = create_test_jwt(user_id)

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies=cookies,
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(
    db_engine,
    test_user,  # noqa: ARG001 - ensures user exists
    auth_settings,  # noqa: ARG001 - JWT auth enabled
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client authenticated as the regular test user.

    Uses the JWT session cookie (hosted mode) against the test database.
    """
    async for ac in _db_client(db_engine, TEST_USER_ID):
        yield ac


@pytest_asyncio.fixture
async def admin_client(
    db_engine,
    admin_user,  # noqa: ARG001 - ensures admin exists
    auth_settings,  # noqa: ARG001 - JWT auth enabled
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client authenticated as the admin user."""
    async for ac in _db_client(db_engine, ADMIN_USER_ID):
        yield ac


@pytest_asyncio.fixture
async def unauthenticated_client(
    db_engine,
    auth_settings,  # noqa: ARG001 - auth enabled so a missing cookie is 401
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client without authentication."""
    async for ac in _db_client(db_engine, None):
        yield ac
