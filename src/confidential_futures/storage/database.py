"""Database connection and session management for the ledger store.

Every coordinator operation runs inside one `get_async_session()` block,
which commits on normal exit and rolls back on any exception, so a block
is the ledger's unit of atomicity.

Supported URLs:
    postgresql+asyncpg://...   production ledger
    sqlite+aiosqlite:///path   local file ledger (CLI runs)
    sqlite+aiosqlite:///:memory:  tests and in-process simulations
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from confidential_futures.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000

_SYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def normalize_async_database_url(database_url: str) -> str:
    """Swap a sync driver prefix for its async counterpart."""
    for sync_prefix, async_prefix in _SYNC_DRIVERS.items():
        if database_url.startswith(sync_prefix):
            logger.warning(
                "Database URL uses sync dialect '%s'; using async driver '%s'.",
                sync_prefix,
                async_prefix,
            )
            return async_prefix + database_url[len(sync_prefix) :]
    return database_url


def is_sqlite_url(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def is_memory_url(database_url: str) -> bool:
    return is_sqlite_url(database_url) and ":memory:" in database_url


def _configure_sqlite_file(engine: AsyncEngine) -> None:
    # the CLI sweep may run while a simulation holds the write lock
    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an asynchronous SQLAlchemy engine for the ledger.

    Args:
        database_url: Ledger connection URL.
        **kwargs: Additional engine options.

    Returns:
        SQLAlchemy AsyncEngine instance.
    """
    url = normalize_async_database_url(database_url)
    engine = create_async_engine(url, **kwargs)
    if is_sqlite_url(url) and not is_memory_url(url):
        _configure_sqlite_file(engine)
    return engine


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create every ledger table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger schema initialized")


class DatabaseManager:
    """Owns the ledger engine and hands out transactional sessions.

    In-memory SQLite URLs share one connection (`StaticPool`) so that every
    session of the manager sees the same database.

    Example:
        ```python
        db = DatabaseManager("sqlite+aiosqlite:///./ledger.db")
        await db.init_schema_async()
        async with db.get_async_session() as session:
            ...
        await db.dispose_async()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        """Initialize database manager.

        Args:
            database_url: Ledger connection URL.
            pool_size: Connection pool size (ignored for SQLite).
            max_overflow: Maximum overflow connections (ignored for SQLite).
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_memory(self) -> bool:
        return is_memory_url(self.database_url)

    def _get_async_engine(self) -> AsyncEngine:
        if self._async_engine is None:
            options: dict[str, Any] = {"echo": self._echo}
            if self.is_memory:
                options["poolclass"] = StaticPool
            elif not is_sqlite_url(self.database_url):
                options["pool_size"] = self._pool_size
                options["max_overflow"] = self._max_overflow
            self._async_engine = create_async_db_engine(self.database_url, **options)
        return self._async_engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One ledger transaction: commit on exit, roll back on exception.

        Yields:
            SQLAlchemy AsyncSession instance.
        """
        if self._async_session_factory is None:
            self._async_session_factory = create_async_session_factory(self._get_async_engine())

        session = self._async_session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        await init_async_db(self._get_async_engine())

    async def missing_tables(self) -> list[str]:
        """Ledger tables that do not exist in the database yet."""
        async with self._get_async_engine().connect() as conn:
            existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        return sorted(set(Base.metadata.tables) - existing)

    async def dispose_async(self) -> None:
        """Dispose of all async database connections."""
        if self._async_engine is not None:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
        logger.info("Ledger connections disposed")
