"""Database connection and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from studio_access.config import settings
from studio_access.db.models import Base

logger = logging.getLogger(__name__)

engine: AsyncEngine
async_session_maker: async_sessionmaker[AsyncSession]


def _enable_immediate_transactions(sync_engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite/aiosqlite defer BEGIN until the first write, so two sessions can
    both read a room's bookings before either inserts. Emitting our own
    BEGIN IMMEDIATE serializes transactions at the database, which is what the
    booking conflict check relies on.
    """

    @event.listens_for(sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Stop the driver from emitting its own BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def configure_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """(Re)create the module engine and session factory for a database URL."""
    global engine, async_session_maker

    is_sqlite = database_url.startswith("sqlite")
    engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args={"timeout": 30} if is_sqlite else {},
    )
    if is_sqlite:
        _enable_immediate_transactions(engine.sync_engine)

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine


configure_engine(settings.database_url, echo=settings.debug)


async def init_db() -> None:
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")


async def dispose_db() -> None:
    """Close all pooled connections."""
    await engine.dispose()


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session as a context manager.

    Commits on clean exit and rolls back if the body raises.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
