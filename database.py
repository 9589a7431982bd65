"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation for the custody engine. PostgreSQL (asyncpg) in production, SQLite
(aiosqlite) for local runs and tests.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def to_async_url(database_url: str) -> str:
    """Rewrite a plain database URL into its async driver form"""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        database_url = database_url.replace("sslmode=require", "ssl=require")
        database_url = database_url.replace("sslmode=prefer", "ssl=prefer")
        database_url = database_url.replace("sslmode=disable", "ssl=disable")
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _build_engine(database_url: str, **engine_kwargs: Any) -> AsyncEngine:
    url = to_async_url(database_url)
    if url.startswith("postgresql+asyncpg://") and "poolclass" not in engine_kwargs:
        engine_kwargs.setdefault("pool_size", Config.DATABASE_POOL_SIZE)
        engine_kwargs.setdefault("max_overflow", Config.DATABASE_MAX_OVERFLOW)
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault("pool_recycle", 3600)
        engine_kwargs.setdefault("pool_timeout", 30)
        engine_kwargs.setdefault(
            "connect_args",
            {
                "server_settings": {"application_name": "assetlink_custody"},
                "timeout": 10,
                "command_timeout": 30,
            },
        )
    engine_kwargs.setdefault("echo", False)
    return create_async_engine(url, **engine_kwargs)


async_engine: AsyncEngine = _build_engine(Config.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,  # Background monitors read rows after commit
)


def init_engine(database_url: Optional[str] = None, **engine_kwargs: Any) -> AsyncEngine:
    """Rebind the module engine and session factory (tests, alternate DSNs)"""
    global async_engine, AsyncSessionLocal
    async_engine = _build_engine(database_url or Config.DATABASE_URL, **engine_kwargs)
    AsyncSessionLocal = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    logger.info(f"🔌 DATABASE: Engine bound to {async_engine.url.drivername}")
    return async_engine


@asynccontextmanager
async def async_managed_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.

    Commits on clean exit, rolls back and re-raises on error.

    Usage:
        async with async_managed_session() as session:
            record = await session.get(CustodyRecord, record_id)
    """
    session = AsyncSessionLocal()
    try:
        yield session
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        await session.close()


async def create_tables():
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Database tables ready")
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


async def drop_tables():
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_engine():
    await async_engine.dispose()
