"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the ChannelPass settlement core.
"""

import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_async_database_url(database_url: str) -> str:
    """Normalize a database URL for the async drivers (asyncpg / aiosqlite)"""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        database_url = database_url.replace("sslmode=require", "ssl=require")
        database_url = database_url.replace("sslmode=prefer", "ssl=prefer")
        database_url = database_url.replace("sslmode=disable", "ssl=disable")
    elif database_url.startswith("sqlite:///"):
        database_url = database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return database_url


def create_engine_for_url(database_url: str, echo: bool = False, **engine_kwargs):
    """Create an async engine; connection pooling is only tuned for PostgreSQL"""
    async_url = build_async_database_url(database_url)

    if async_url.startswith("postgresql+asyncpg://"):
        return create_async_engine(
            async_url,
            pool_size=7,
            max_overflow=15,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,       # Wait max 30 seconds for connection during bursts
            echo=echo,
            connect_args={
                "server_settings": {"application_name": "channelpass_settlement"},
                "timeout": 10,
                "command_timeout": 30,
            },
        )

    engine = create_async_engine(async_url, echo=echo, **engine_kwargs)
    if async_url.startswith("sqlite+aiosqlite://"):
        _enable_sqlite_savepoints(engine)
    return engine


def _enable_sqlite_savepoints(engine):
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT/ROLLBACK TO work under aiosqlite"""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # CRITICAL: Prevent greenlet errors in background tasks
    )


if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

async_engine = create_engine_for_url(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Async session factory, passed explicitly to every service at startup
AsyncSessionLocal = create_session_factory(async_engine)


async def create_tables(engine=None):
    """Create all tables (development and tests; production uses migrations)"""
    target = engine or async_engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created/verified")


async def close_database(engine=None):
    target = engine or async_engine
    await target.dispose()
    logger.info("🔒 Database connections closed")
