"""
Async database session management using SQLAlchemy 2.0.

One engine per process, created in the application lifespan (or by a tool
script) and disposed at shutdown. Request handlers receive a session through
the ``DbSession`` dependency; scripts open one with ``get_background_session``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from agrichain.core.config import get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.debug}
    # SQLite uses a static single-connection pool that rejects pool sizing
    if make_url(url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_pre_ping=True,
        )
    return options


async def init_db(database_url: str | None = None) -> None:
    """
    Initialize the database engine and session factory.

    ``database_url`` overrides the configured DSN (used by tool scripts
    pointed at a different database).
    """
    global _engine, _session_factory

    url = database_url or str(get_settings().database_url)
    _engine = create_async_engine(url, **_engine_options(url))
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_db() -> None:
    """Dispose the engine and release pooled connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def ping_db() -> bool:
    """Return True when the database answers a trivial query."""
    if _engine is None:
        return False
    async with _engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    Routers commit explicitly through the store; whatever is still pending when
    the request finishes is committed here, and any error rolls back.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_background_session() -> AsyncGenerator[AsyncSession, None]:
    """Create an independent session for scripts and background jobs."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _session_factory() as session:
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
