"""
Pytest configuration and fixtures for AuthGate tests
"""

import os
import sys
from collections.abc import AsyncGenerator

# Settings are read at import time, so the environment has to be ready first
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("WEBAUTHN_RP_ID", "localhost")
os.environ.setdefault("WEBAUTHN_ORIGINS", '["http://localhost:3000"]')
os.environ.setdefault("LOG_JSON", "false")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

# Import Base first, before importing the app
from authgate.database import Base, get_db
from authgate.models.user import User
from authgate.utils.challenge_store import InMemoryChallengeStore
from authgate.utils.secret_vault import SecretVault, derive_key

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# One shared connection so every session sees the same in-memory database
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,  # Set to True for SQL debugging
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)


@event.listens_for(test_engine.sync_engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

TEST_SESSION_ID = "test-session"


@pytest.fixture(scope="function")
async def setup_test_database():
    """Create a fresh schema for each test function that needs it."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(scope="function")
async def test_db(setup_test_database) -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionLocal() as session:
        yield session


@pytest.fixture
def vault() -> SecretVault:
    return SecretVault(derive_key("test-secret-key-not-for-production"))


@pytest.fixture
def challenge_store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore(ttl_seconds=300)


@pytest.fixture
async def test_user(test_db: AsyncSession) -> User:
    """A password-login user with no second factor yet"""
    user = User(email="testuser@example.com", name="Test User")
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest.fixture
async def other_user(test_db: AsyncSession) -> User:
    user = User(email="other@example.com", name="Other User")
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest.fixture
async def federated_user(test_db: AsyncSession) -> User:
    """A user who signed in through a trusted identity provider"""
    user = User(email="oauth@example.com", name="OAuth User", provider="google_oauth2", uid="google-uid-123")
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest.fixture
async def app_client(test_db: AsyncSession, challenge_store: InMemoryChallengeStore):
    """
    Client for the full application with the database, session id and
    challenge store pinned to the test fixtures. Authenticated routes are
    reached by overriding get_current_user in the test.
    """
    from authgate.auth import get_session_id
    from authgate.utils.challenge_store import get_challenge_store
    from main import app

    async def _get_db():
        yield test_db

    async def _get_store():
        return challenge_store

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_challenge_store] = _get_store
    app.dependency_overrides[get_session_id] = lambda: TEST_SESSION_ID

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def login_as(app_client):
    """Make get_current_user return the given user for the following requests."""
    from authgate.auth import get_current_user
    from main import app

    def _login(user: User) -> None:
        app.dependency_overrides[get_current_user] = lambda: user

    return _login
