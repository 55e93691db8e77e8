"""Database configuration and session management."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import JSON, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from docportal.config import settings

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and local runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_options(url: str) -> dict[str, Any]:
    if is_sqlite_url(url):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,  # Max persistent connections
        "max_overflow": 20,  # Additional transient connections under load
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine, wiring SQLite foreign-key enforcement when needed."""
    async_engine = create_async_engine(url, echo=echo, **_engine_options(url))
    if is_sqlite_url(url):
        event.listen(async_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return async_engine


engine = build_engine(settings.database_url, echo=settings.debug)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Test hook to override session maker
_test_session_maker: async_sessionmaker[AsyncSession] | None = None


def set_test_session_maker(
    maker: async_sessionmaker[AsyncSession] | None,
) -> async_sessionmaker[AsyncSession] | None:
    """Set test session maker and return the previous value."""
    global _test_session_maker
    previous = _test_session_maker
    _test_session_maker = maker
    return previous


def get_test_session_maker() -> async_sessionmaker[AsyncSession] | None:
    return _test_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the active session maker (test override first)."""
    return _test_session_maker or async_session_maker


def create_session_maker_from_db(db: AsyncSession) -> async_sessionmaker[AsyncSession]:
    """Create a new session maker sharing the same engine as the provided session.

    Background ingestion tasks outlive the request session, so they open their own
    sessions on the same bind.
    """
    bind = db.bind or db.get_bind()
    if isinstance(bind, AsyncEngine):
        async_engine = bind
    elif isinstance(bind, Engine) and getattr(bind, "_async_engine", None):
        async_engine = bind._async_engine
    else:
        async_engine = getattr(bind, "async_engine", None)

    if not isinstance(async_engine, AsyncEngine):
        if _test_session_maker is not None:
            return _test_session_maker
        raise RuntimeError("Async engine unavailable for session maker creation")

    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for database session."""
    maker = get_session_maker()
    async with maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create any missing tables for the engine models."""
    from docportal import models  # noqa: F401
    from docportal.logger import get_logger

    logger = get_logger(__name__)
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized", tables=len(Base.metadata.tables))
