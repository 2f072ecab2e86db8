"""Alembic migration environment for the ledger schema.

The database URL comes from the application's `DatabaseSettings`
(`DATABASE_URL`, `.env` included) unless `SQLALCHEMY_DATABASE_URL` overrides
it, and is normalized to an async driver (asyncpg or aiosqlite). SQLite
ledgers migrate in batch mode because SQLite cannot ALTER most constraints.
"""

from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from confidential_futures.config import DatabaseSettings
from confidential_futures.storage.database import is_sqlite_url, normalize_async_database_url
from confidential_futures.storage.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

load_dotenv(override=False)

target_metadata = Base.metadata


def _resolve_database_url() -> str:
    override = os.environ.get("SQLALCHEMY_DATABASE_URL")
    if override:
        return normalize_async_database_url(os.path.expandvars(override))
    if "DATABASE_URL" in os.environ:
        return normalize_async_database_url(DatabaseSettings().url)
    return normalize_async_database_url(config.get_main_option("sqlalchemy.url") or DatabaseSettings().url)


database_url = _resolve_database_url()
config.set_main_option("sqlalchemy.url", database_url)
render_as_batch = is_sqlite_url(database_url)


def run_migrations_offline() -> None:
    """Emit the ledger DDL as SQL without connecting."""
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=render_as_batch,
    )

    with context.begin_transaction():
        context.run_migrations()


def _do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=render_as_batch,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def _run_migrations_online_async() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(_do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(_run_migrations_online_async())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
