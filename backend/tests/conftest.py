"""Pytest configuration and fixtures for backend tests.

Database Handling:
- Tests run against a throwaway SQLite file (aiosqlite) created per session.
  A file rather than ``:memory:`` so the application's own session factory,
  the test session and concurrently opened sessions all see the same data.
- Tables are created and dropped around every test that asks for the database.
"""

import os
import shutil
import tempfile
from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Set test environment variables before importing app modules
_TEST_DIR = os.environ.get("PORTAL_GATE_TEST_DIR") or tempfile.mkdtemp(prefix="portal-gate-tests-")
os.environ["PORTAL_GATE_TEST_DIR"] = _TEST_DIR
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/test.db"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-" + "0" * 48
os.environ["CSRF_PROTECTION"] = "true"
os.environ["RATE_LIMIT_ENABLED"] = "true"
os.environ["ROTATE_REFRESH_TOKENS"] = "true"
os.environ["LOG_LEVEL"] = "WARNING"

# Test credentials
TEST_PASSWORD = "Corr3ct-Horse-Battery"
BASE_URL = "http://test"


def pytest_sessionfinish(session, exitstatus):
    """Remove the SQLite directory when tests finish."""
    shutil.rmtree(_TEST_DIR, ignore_errors=True)


# --- Singleton Reset Fixture ---


def _reset_singletons():
    """Drop the process-wide singletons so each test starts from empty state.

    The rate limiter, session registry and event logger all keep state in
    memory; a test that logs in five times must not leave the next one
    rate limited.
    """
    from app.middleware.gate import RequestGate
    from app.middleware.rate_limit import RateLimiter
    from app.services.security_events import SecurityEventLogger
    from app.services.sessions import InMemorySessionStore
    from app.services.tokens import TokenService

    RateLimiter._instance = None
    InMemorySessionStore._instance = None
    SecurityEventLogger._instance = None
    TokenService._instance = None
    RequestGate._instance = None


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset in-memory gate state before and after each test."""
    _reset_singletons()
    yield
    _reset_singletons()


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create all tables on the application engine, drop them afterwards."""
    from app.core.database import Base, engine
    from app.models import BackupCode, SecurityEvent, User  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    # Pooled connections belong to this test's event loop
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing.

    Commit what you create: the application reads through its own sessions.
    """
    from app.core.database import async_session_maker

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client_factory(db_engine):
    """Factory for HTTP clients, each with its own cookie jar."""
    from app.main import app

    clients: list[AsyncClient] = []

    def _create(target_app=None) -> AsyncClient:
        client = AsyncClient(transport=ASGITransport(app=target_app or app), base_url=BASE_URL)
        clients.append(client)
        return client

    yield _create

    for client in clients:
        await client.aclose()


@pytest_asyncio.fixture(scope="function")
async def async_client(client_factory) -> AsyncClient:
    """Create an async test client for the application."""
    return client_factory()


# --- Test Factories ---


@pytest.fixture
def user_factory(db_session):
    """Factory for creating committed test users."""
    from app.services.auth import AuthService

    async def _create_user(
        username: str = "editor",
        role: str = "editor",
        password: str = TEST_PASSWORD,
        email: str | None = None,
        is_first_login: bool = False,
    ):
        user = await AuthService(db_session).create_user(
            username=username,
            email=email or f"{username}@example.org",
            password=password,
            role=role,
            is_first_login=is_first_login,
        )
        await db_session.commit()
        return user

    return _create_user


@pytest_asyncio.fixture
async def admin_user(user_factory):
    return await user_factory(username="admin", role="super-admin")


@pytest_asyncio.fixture
async def editor_user(user_factory):
    return await user_factory(username="editor", role="editor")


@pytest.fixture
def login() -> Callable:
    """Log a client in and make it echo the CSRF token on later requests."""

    async def _login(client: AsyncClient, username: str, password: str = TEST_PASSWORD, **extra):
        response = await client.post(
            "/auth/login",
            json={"username": username, "password": password, **extra},
        )
        assert response.status_code == 200, response.text
        data = response.json()
        if data.get("csrf_token"):
            client.headers["X-CSRF-Token"] = data["csrf_token"]
        return data

    return _login


@pytest_asyncio.fixture
async def admin_client(async_client, admin_user, login) -> AsyncClient:
    """Client logged in as the super-admin."""
    await login(async_client, admin_user.username)
    return async_client


@pytest_asyncio.fixture
async def event_store(db_engine):
    """Persist security events to the test database for the duration of a test."""
    from app.core.database import async_session_maker
    from app.services.security_events import get_security_event_logger

    events = get_security_event_logger()
    events.set_db_session_factory(async_session_maker)
    yield events
    await events.shutdown()
    events.set_db_session_factory(None)
