"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation for the escrow and payout core.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _async_database_url(url: str) -> str:
    """Normalise a configured URL onto an async driver"""
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        url = url.replace("sslmode=", "ssl=")
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


async_database_url = _async_database_url(Config.DATABASE_URL)

if async_database_url.startswith("sqlite"):
    # aiosqlite connections are bound to the loop that opened them
    async_engine = create_async_engine(async_database_url, poolclass=NullPool, echo=False)
else:
    async_engine = create_async_engine(
        async_database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=False,
        connect_args={"server_settings": {"application_name": "escrow_payout_core"}},
    )

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False  # Rows are read after commit in background tasks
)


@asynccontextmanager
async def async_managed_session():
    """
    Async context manager for a unit of work.

    Commits on clean exit, rolls back on any exception and always closes.

    Usage:
        async with async_managed_session() as session:
            result = await session.execute(select(Order).where(...))
    """
    session = AsyncSessionLocal()
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables():
    """Create all database tables if they don't exist"""
    try:
        async with async_engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info("✅ Database tables created successfully")
    except Exception as e:
        logger.error(f"❌ Error creating database tables: {e}")
        raise

