"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
for the Escrow Lifecycle Engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def normalize_async_url(url: str) -> str:
    """Rewrite sync driver URLs to their asyncio drivers"""
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        url = url.replace("sslmode=require", "ssl=require")
        url = url.replace("sslmode=prefer", "ssl=prefer")
        url = url.replace("sslmode=disable", "ssl=disable")
    elif url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    SQLite has no row locks; BEGIN IMMEDIATE serializes writers so conditional
    updates see committed state instead of failing with a lock upgrade deadlock.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL (defaults to Config.DATABASE_URL)"""
    database_url = normalize_async_url(url or Config.DATABASE_URL)
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30},
        )
        _configure_sqlite(engine)
    else:
        engine = create_async_engine(
            database_url,
            pool_size=Config.DATABASE_POOL_SIZE,
            max_overflow=Config.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=echo,
            connect_args={
                "server_settings": {"application_name": "escrow_lifecycle_engine"},
                "timeout": 10,
                "command_timeout": 30,
            },
        )
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Records outlive their session in service code
    )


def init_database(url: Optional[str] = None, echo: bool = False) -> async_sessionmaker:
    """Initialise the process-wide engine and session factory"""
    global _engine, _session_factory
    _engine = build_engine(url, echo=echo)
    _session_factory = build_session_factory(_engine)
    logger.info(f"🗄️ Database engine initialised ({_engine.dialect.name})")
    return _session_factory


def get_session_factory() -> async_sessionmaker:
    """Session factory, initialised from Config on first use"""
    if _session_factory is None:
        return init_database()
    return _session_factory


@asynccontextmanager
async def managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async context manager for database sessions: commit on success, rollback on error"""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.debug(f"Database session rolled back: {type(e).__name__}: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Create all database tables if they don't exist"""
    target = engine or _engine
    if target is None:
        get_session_factory()
        target = _engine
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    logger.info(f"✅ Database schema verified: {len(Base.metadata.tables)} tables")


async def test_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Test database connection"""
    target = engine or _engine
    if target is None:
        get_session_factory()
        target = _engine
    try:
        async with target.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
