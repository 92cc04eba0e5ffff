import asyncio
from logging.config import fileConfig

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy import pool
from sqlalchemy.engine import Connection

from alembic import context

from app.shared.db.base import Base
# Import all models so Base knows about them!
from app.models.tenant import Organization, User  # noqa: F401 # pylint: disable=unused-import
from app.models.billing import Subscription, SubscriptionPayment, WebhookEvent  # noqa: F401

from app.shared.core.config import get_settings
from app.shared.db.session import _normalize_db_url
from sqlalchemy.ext.asyncio import create_async_engine


settings = get_settings()


# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
# This line sets up loggers basically.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def compare_type(context, inspected_column, metadata_column, inspected_type, metadata_type):
    """
    Suppress type diffs that are semantically equivalent in this codebase.
    """
    inspected_name = type(inspected_type).__name__
    metadata_name = type(metadata_type).__name__

    # Raw webhook payloads use JSON with a JSONB variant on PostgreSQL; autogen
    # reports noisy JSON vs JSONB changes otherwise.
    if inspected_name in {"JSON", "JSONB"} and metadata_name in {"JSON", "JSONB"}:
        return False
    if isinstance(inspected_type, postgresql.JSON) and isinstance(metadata_type, sa.JSON):
        return False

    return None


def _database_url() -> str:
    url = _normalize_db_url(settings.DATABASE_URL)
    if not url:
        raise ValueError("DATABASE_URL is not set. Migrations cannot run.")
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Emits SQL to the script output without a DBAPI connection.
    """
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=compare_type,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=compare_type,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Create an async Engine and associate a connection with the context."""
    connectable = create_async_engine(_database_url(), poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
