"""
Alembic environment for the chronos schema.

Migrations run against settings.DATABASE_URL through an async engine. The
HNSW index on content_chunks.embedding is created with raw SQL, so it is
invisible to the ORM metadata; include_object keeps autogenerate from
emitting a drop for it.
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

from chronos.core.config import settings
from chronos.db.base import Base
from chronos.models import ContentChunk, ContentItem, ContentView, UsageMetric  # noqa: F401

config = context.config
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Objects managed by hand-written DDL in the migrations
UNMANAGED_INDEXES = {"ix_content_chunks_embedding_hnsw"}


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    if type_ == "index" and name in UNMANAGED_INDEXES:
        return False
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without a database connection."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    # NullPool: one short-lived connection per migration run
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
