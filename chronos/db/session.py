"""
Database Session Management

Engine and session-factory construction for the async PostgreSQL driver.

Key Concepts:
--------------
1. Engine: owns the connection pool. asyncpg connections are bound to the
   event loop that opened them, so an engine must live and die inside one
   loop. The API builds one in its lifespan; each Celery task run builds its
   own (see chronos.container).
2. Session factory: ``async_sessionmaker`` producing short-lived
   ``AsyncSession`` objects, one per unit of work.
3. expire_on_commit=False: ORM objects stay readable after commit, which the
   repository relies on when it hands rows back to callers.

Architecture Flow:
------------------
Startup → create_engine() → create_session_factory(engine)
↓
Unit of work → async with factory() as session / factory.begin() → commit or rollback
↓
Shutdown → dispose_engine(engine)
"""

from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from chronos.core.config import Settings, settings as default_settings
from chronos.core.logging import get_logger

logger = get_logger(__name__)


# ================================
# Database Engine Configuration
# ================================

def get_engine_config(cfg: Settings, pooled: bool = True) -> dict[str, Any]:
    """
    Build keyword arguments for ``create_async_engine``.

    Pool Types:
    -----------
    - AsyncAdaptedQueuePool: long-lived processes (the API). Keeps
      DB_POOL_SIZE connections open, allows DB_MAX_OVERFLOW more under load.
    - NullPool: short-lived engines (one Celery task run, tests). Opens a
      connection per checkout and closes it on release.

    pool_pre_ping tests a connection before use so a database restart shows
    up as a reconnect instead of an error in the middle of a stage.
    """
    config: dict[str, Any] = {
        "echo": cfg.DB_ECHO,
        "pool_pre_ping": True,
        "connect_args": {
            "server_settings": {
                "application_name": cfg.APP_NAME,
            }
        },
    }

    if pooled:
        config.update({
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": cfg.DB_POOL_SIZE,
            "max_overflow": cfg.DB_MAX_OVERFLOW,
            "pool_recycle": 7200 if cfg.is_production else 3600,
            "pool_timeout": 30,
        })
    else:
        config["poolclass"] = NullPool

    return config


def create_engine(cfg: Optional[Settings] = None, pooled: bool = True) -> AsyncEngine:
    """
    Create the async database engine.

    Args:
        cfg: Settings to read the URL and pool sizes from
        pooled: Use a connection pool (False for per-task engines)

    Returns:
        AsyncEngine: The database engine instance
    """
    cfg = cfg or default_settings
    engine_config = get_engine_config(cfg, pooled=pooled)

    engine = create_async_engine(cfg.DATABASE_URL, **engine_config)

    logger.info(
        "database_engine_created",
        driver="asyncpg",
        pool_size=engine_config.get("pool_size", "NullPool"),
    )

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine, create_tables: bool = False) -> None:
    """
    Verify the database connection and optionally create tables.

    Production schemas are managed by Alembic; ``create_tables`` is for
    development and integration tests only.
    """
    logger.info("initializing_database")

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))

        logger.info("database_connection_successful")

        if create_tables:
            from chronos.db.base import Base
            import chronos.models  # noqa: F401

            async with engine.begin() as conn:
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                await conn.run_sync(Base.metadata.create_all)

            logger.info("database_tables_created")

    except Exception as e:
        logger.error(
            "database_initialization_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise


async def dispose_engine(engine: AsyncEngine) -> None:
    """Close all pooled connections."""
    logger.info("closing_database_connections")

    try:
        await engine.dispose()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error(
            "database_closure_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


async def check_db_health(engine: AsyncEngine) -> bool:
    """
    Run a trivial query to confirm the database is reachable.

    Returns:
        bool: True if the database answered, False otherwise
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
