"""Database connection and session management for PriceBridge.

Provides async SQLAlchemy session management with connection pooling.
PostgreSQL connections run at SERIALIZABLE isolation so that concurrent merges
surface as serialization failures; SQLite connections take the write lock at
BEGIN so that a transaction's reads and writes see one snapshot.
"""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from pricebridge.config import DBConfig
from pricebridge.db.models import Base


def create_engine_for(db_config: DBConfig) -> AsyncEngine:
    """Build an async engine for the given database configuration.

    Args:
        db_config: Connection settings

    Returns:
        AsyncEngine: SQLAlchemy async engine
    """
    # Build engine kwargs
    engine_kwargs: dict = {"echo": db_config.echo}
    is_sqlite = "sqlite" in db_config.url.lower()

    if is_sqlite:
        # Wait on the database lock instead of failing immediately
        engine_kwargs["connect_args"] = {"timeout": 30}
    else:
        engine_kwargs.update({
            "pool_size": db_config.pool_size,
            "max_overflow": db_config.pool_max_overflow,
            "pool_timeout": db_config.pool_timeout,
            "pool_pre_ping": True,  # Verify connections before using
            "pool_recycle": 3600,  # Recycle connections after 1 hour
        })
        if db_config.serializable:
            engine_kwargs["isolation_level"] = "SERIALIZABLE"

    engine = create_async_engine(db_config.url, **engine_kwargs)

    if is_sqlite:
        _configure_sqlite(engine)

    return engine


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Enable foreign keys and explicit transaction control on SQLite."""

    @event.listens_for(engine.sync_engine, "connect")
    def connect(dbapi_connection, connection_record):
        # Disable the driver's implicit BEGIN; emitted below instead
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    """Create an AsyncSession factory bound to ``engine``."""
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database (create all tables).

    Convenience for development and tests; production schemas are managed
    out of band.

    Raises:
        SQLAlchemyError: If table creation fails
    """
    async with engine.begin() as conn:
        # Create all tables defined in Base metadata
        await conn.run_sync(Base.metadata.create_all)

