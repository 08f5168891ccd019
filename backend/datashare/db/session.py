"""
Async engine and session factory for the gateway database.

Gateway components open one short transaction per store operation, so the
process shares a single factory rather than a request-scoped session.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from datashare.core.config import Settings, get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(settings: Settings) -> dict[str, Any]:
    """Pool and driver options derived from settings.

    The server-side statement timeout matches the request deadline so that
    a statement abandoned by a timed-out request does not keep its row lock.
    Bound parameters carry grant tokens and are kept out of error messages.
    """
    statement_timeout_ms = int(settings.request_timeout_seconds * 1000)
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_pre_ping": True,
        "echo": settings.debug,
        "hide_parameters": True,
        "connect_args": {
            "server_settings": {
                "application_name": "datashare-gateway",
                "statement_timeout": str(statement_timeout_ms),
            },
        },
    }


async def init_db() -> None:
    """Create the engine and session factory; a second call is a no-op."""
    global _engine, _session_factory
    if _engine is not None:
        return

    settings = get_settings()
    _engine = create_async_engine(str(settings.database_url), **engine_options(settings))
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_db() -> None:
    """Dispose of the connection pool at shutdown."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session that commits on success and rolls back on error.

    Only the health probe uses it; store operations go through the factory.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
