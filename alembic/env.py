"""Alembic environment for the content API (async engine).

The database URL is ``settings.DATABASE_URL`` unless overridden on the
command line, e.g. ``alembic -x dburl=sqlite+aiosqlite:///local.db upgrade head``.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

from app.config import settings
from app.database import Base

# Registers users, articles and comments on Base.metadata.
import app.models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

DATABASE_URL = context.get_x_argument(as_dictionary=True).get("dburl", settings.DATABASE_URL)
# SQLite cannot ALTER most constraints in place.
RENDER_AS_BATCH = DATABASE_URL.startswith("sqlite")


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        render_as_batch=RENDER_AS_BATCH,
        compare_type=True,
        **kwargs,
    )


def migrate_offline() -> None:
    """Print the migration SQL instead of running it (``alembic upgrade --sql``)."""
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _migrate_with(connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def migrate_online() -> None:
    engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate_with)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    migrate_offline()
else:
    asyncio.run(migrate_online())
