"""Database engine and session factory helpers for the storage layer."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from eth_token_tracker.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def normalize_async_database_url(database_url: str) -> str:
    for sync_prefix, async_prefix in _ASYNC_DRIVERS.items():
        if database_url.startswith(sync_prefix):
            logger.warning(
                "Database URL uses sync dialect '%s'; using async driver '%s'.",
                sync_prefix,
                async_prefix,
            )
            return database_url.replace(sync_prefix, async_prefix, 1)
    return database_url


def url_dialect(database_url: str) -> str:
    """Backend name of a database URL (``postgresql``, ``sqlite``, ...)."""
    return make_url(database_url).get_backend_name()


def is_memory_sqlite_url(database_url: str) -> bool:
    """Whether a URL points at an in-memory SQLite database."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return False
    database = url.database or ""
    return (
        database in ("", ":memory:")
        or database.startswith("file::memory:")
        or url.query.get("mode") == "memory"
    )


def create_async_db_engine(
    database_url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
    **kwargs: Any,
) -> AsyncEngine:
    """Create an asynchronous SQLAlchemy engine.

    Args:
        database_url: Database connection URL (e.g., postgresql+asyncpg://...).
        pool_size: Connection pool size (ignored for SQLite).
        max_overflow: Maximum overflow connections (ignored for SQLite).
        echo: Echo SQL statements for debugging.
        **kwargs: Additional engine options.

    Returns:
        SQLAlchemy AsyncEngine instance.

    Raises:
        ValueError: If the URL names an in-memory SQLite database.
    """
    url = normalize_async_database_url(database_url)
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_size", pool_size)
        kwargs.setdefault("max_overflow", max_overflow)
        kwargs.setdefault("pool_pre_ping", True)
    elif is_memory_sqlite_url(url):
        raise ValueError("in-memory SQLite is not supported; use a database file path")
    return create_async_engine(url, echo=echo, **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an asynchronous session factory.

    Args:
        engine: SQLAlchemy AsyncEngine instance.

    Returns:
        Async session factory.
    """
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create the ``tokens`` and ``transfers`` tables if they do not exist.

    Args:
        engine: SQLAlchemy AsyncEngine instance.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized")
