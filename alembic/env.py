"""
Alembic environment - runs migrations over the async engine.
The database URL comes from DATABASE_URL via apex.config, not alembic.ini.
"""
import asyncio

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

import apex.models  # noqa: F401  (registers every table on Base.metadata)
from apex.config import get_settings
from apex.database import Base

config = context.config
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=get_settings().database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(get_settings().database_url)
    async with engine.connect() as connection:
        await connection.run_sync(_run_sync)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
