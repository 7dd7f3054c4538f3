"""
Global pytest fixtures for the SCIM provider test suite.

Provides:
- Async database session on a temporary SQLite file
- FastAPI async test client sharing that session
- Small factories for SCIM request payloads
"""
import os
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_AUTO_CREATE"] = "false"


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_file = f"test_{uuid4().hex}.sqlite"
    db_url = f"sqlite+aiosqlite:///{db_file}"

    engine = create_async_engine(db_url, echo=False)
    yield engine
    await engine.dispose()

    # Cleanup
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    import scim_provider.models  # noqa: F401
    from scim_provider.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    return db_session


@pytest.fixture
def store(db):
    from scim_provider.modules.scim.domain.store import SqlAlchemyIdentityStore

    return SqlAlchemyIdentityStore(db)


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    """Use the real application for API tests."""
    from scim_provider.main import app as scim_app

    return scim_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share test session."""
    from httpx import ASGITransport, AsyncClient

    from scim_provider.shared.db.session import get_db

    old_override = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = lambda: db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    if old_override:
        app.dependency_overrides[get_db] = old_override
    else:
        app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def ac(async_client):
    """Alias for async_client."""
    return async_client


@pytest.fixture
def settings():
    from scim_provider.shared.core.config import get_settings

    return get_settings()


# ============================================================================
# Schema registry fixtures
# ============================================================================

@pytest.fixture
def registry():
    from scim_provider.modules.scim.domain.schema import build_registry

    return build_registry()


@pytest.fixture
def user_type(registry):
    return registry.resource_type("User")


@pytest.fixture
def group_type(registry):
    return registry.resource_type("Group")


