"""
Async engine and session factory for the identity store.

The engine is built from settings on first use, so tests and scripts can point
DATABASE_URL elsewhere before anything connects.
"""

from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from scim_provider.shared.core.config import get_settings
from scim_provider.shared.db.base import Base

logger = structlog.get_logger()

# ORM mappings must be registered before create_all sees the metadata.
import scim_provider.models  # noqa: F401, E402


@dataclass(frozen=True, slots=True)
class IdentityDatabase:
    url: str
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]


_database: IdentityDatabase | None = None
_database_lock = Lock()


def resolve_database_url(raw_url: str) -> str:
    """Plain `sqlite:///` URLs are served through the aiosqlite driver."""
    url = (raw_url or "").strip()
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///") :]
    return url


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_database() -> IdentityDatabase:
    settings = get_settings()
    url = resolve_database_url(settings.DATABASE_URL)
    options: dict[str, Any] = {"echo": settings.DB_ECHO}
    if url.endswith(":memory:"):
        # Every session must see the same in-memory database.
        options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        options["pool_pre_ping"] = True

    engine = create_async_engine(url, **options)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    logger.debug("identity_database_configured", backend=engine.dialect.name)
    return IdentityDatabase(
        url=url,
        engine=engine,
        sessions=async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
    )


def get_database() -> IdentityDatabase:
    global _database
    if _database is None:
        with _database_lock:
            if _database is None:
                _database = _create_database()
    return _database


async def dispose_database() -> None:
    """Close pooled connections. The next use builds a fresh engine."""
    global _database
    database, _database = _database, None
    if database is None:
        return
    await database.engine.dispose()
    logger.info("db_engine_disposed", backend=database.engine.dialect.name)


async def init_db() -> None:
    """Create any missing identity store tables."""
    async with get_database().engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_schema_ensured")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with get_database().sessions() as session:
        yield session
