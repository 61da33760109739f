"""Alembic environment for the indexer's canonical state schema.

The database URL comes from ``SQLALCHEMY_DATABASE_URL`` when set, otherwise
from the application's ``DATABASE_URL`` setting (environment or ``.env``),
falling back to ``sqlalchemy.url`` in alembic.ini. Migrations run through
the same async engine factory the indexer uses.
"""

from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import Connection, pool

from rebalance_indexer.config import DatabaseSettings
from rebalance_indexer.storage.database import create_async_db_engine
from rebalance_indexer.storage.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Loaded before the settings so an override placed only in .env is honored.
load_dotenv(override=False)

target_metadata = Base.metadata


def _resolve_database_url() -> str:
    override = os.environ.get("SQLALCHEMY_DATABASE_URL")
    if override:
        return os.path.expandvars(override)
    if "DATABASE_URL" in os.environ:
        return DatabaseSettings().url
    return config.get_main_option("sqlalchemy.url") or DatabaseSettings().url


database_url = _resolve_database_url()
config.set_main_option("sqlalchemy.url", database_url)


def run_migrations_offline() -> None:
    """Emit SQL for the configured dialect without connecting."""
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=database_url.startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def _do_run_migrations(connection: Connection) -> None:
    # SQLite cannot ALTER most constraints in place.
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def _run_migrations_online_async() -> None:
    engine = create_async_db_engine(database_url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_do_run_migrations)
    finally:
        await engine.dispose()


def run_migrations_online() -> None:
    """Apply migrations against a live database."""
    asyncio.run(_run_migrations_online_async())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
