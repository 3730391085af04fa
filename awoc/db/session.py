"""
AWOC — Database Session Management
====================================
One async engine per process and a transactional session scope for the
SQLAlchemy repository.

PostgreSQL (asyncpg) in deployments; SQLite (aiosqlite) for local runs and
tests, where the pool settings do not apply and writers wait on the file
lock instead of failing.

Usage:
    from awoc.db.session import get_db_session

    async with get_db_session() as session:
        result = await session.execute(...)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from awoc.core.config import Settings, get_settings
from awoc.core.logging import get_logger
from awoc.db.models import Base

logger = get_logger(__name__)

SQLITE_LOCK_TIMEOUT_SECONDS = 30

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str, settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.db_echo_sql}
    if make_url(url).get_backend_name() == "sqlite":
        options["connect_args"] = {"timeout": SQLITE_LOCK_TIMEOUT_SECONDS}
    else:
        options["pool_size"] = settings.db_pool_size
        options["max_overflow"] = settings.db_pool_overflow
        options["pool_pre_ping"] = True
    return options


def _not_initialized() -> RuntimeError:
    return RuntimeError("Database not initialized. Call init_db() during startup.")


async def init_db(url: str | None = None) -> AsyncEngine:
    """
    Create the engine and session factory.  ``url`` overrides
    ``AWOC_DATABASE_URL``.
    """
    global _engine, _session_factory
    settings = get_settings()
    url = url or settings.database_url.get_secret_value()

    _engine = create_async_engine(url, **_engine_options(url, settings))
    _session_factory = async_sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info("db.initialized", backend=_engine.dialect.name)
    return _engine


async def create_schema() -> None:
    """Create the task, event and receipt tables if missing."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work: commit when the block exits cleanly, roll back
    when it raises.
    """
    if _session_factory is None:
        raise _not_initialized()
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise _not_initialized()
    return _engine
