"""
Database session management for CalcBase.

Provides async database sessions using SQLAlchemy 2.0 async features.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from calcbase.core.config import settings
from calcbase.core.logging import get_logger

logger = get_logger(__name__)

# libpq parameters that asyncpg doesn't accept
LIBPQ_PARAMS = {
    "sslmode",
    "channel_binding",
    "sslcert",
    "sslkey",
    "sslrootcert",
    "sslcrl",
    "target_session_attrs",
    "options",
    "application_name",
}


def _prepare_asyncpg_url(database_url: str) -> tuple[str, dict[str, Any]]:
    """
    Strip libpq-only query parameters from a PostgreSQL URL.

    Returns the cleaned URL and the connect_args asyncpg needs instead.
    """
    parsed = urlparse(database_url)
    query_params = parse_qs(parsed.query)
    connect_args: dict[str, Any] = {}

    sslmode = query_params.get("sslmode", [None])[0]
    for param in LIBPQ_PARAMS:
        query_params.pop(param, None)

    if sslmode in ("require", "verify-ca", "verify-full"):
        import ssl

        ssl_context = ssl.create_default_context()
        if sslmode == "require":
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context

    clean_url = urlunparse(parsed._replace(query=urlencode(query_params, doseq=True)))
    return clean_url, connect_args


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """
    Create async database engine.

    Uses connection pooling for PostgreSQL and NullPool for SQLite and tests.
    """
    database_url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {
        "echo": settings.debug and settings.environment == "development",
    }

    if database_url.startswith("sqlite"):
        engine_kwargs["poolclass"] = NullPool
        # Wait on a locked database file instead of failing immediately
        engine_kwargs["connect_args"] = {"timeout": 30}
        return create_async_engine(database_url, **engine_kwargs)

    database_url, connect_args = _prepare_asyncpg_url(database_url)
    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    if settings.environment == "test":
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_size"] = settings.db_pool_size
        engine_kwargs["max_overflow"] = settings.db_max_overflow
        engine_kwargs["pool_timeout"] = settings.db_pool_timeout
        engine_kwargs["pool_pre_ping"] = True

    return create_async_engine(database_url, **engine_kwargs)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the settings every CalcBase session uses."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine()

AsyncSessionLocal = create_session_factory(engine)


@asynccontextmanager
async def get_db_context(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back on error.

    Usage:
        async with get_db_context() as db:
            ...
    """
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Verify database connectivity at startup."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection established")
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        raise


async def close_db() -> None:
    """Dispose of pooled connections at shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")
