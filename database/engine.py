"""
Database Persistence Layer - Async Engine.

============================================================
PURPOSE
============================================================
Owns the SQLAlchemy async engine and session factory for the
position ledger.

Requirements:
- SQLAlchemy 2.0 async ORM (asyncpg for PostgreSQL,
  aiosqlite for local runs and tests)
- Explicit transaction boundaries: commit on success,
  rollback on ANY exception
- Hard failures on persistence errors

============================================================
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dotenv import load_dotenv

from storage.models import Base

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./trading_engine.db"


# =============================================================
# EXCEPTIONS
# =============================================================

class DatabasePersistenceError(Exception):
    """Raised when database persistence fails."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when database connection fails."""
    pass


# =============================================================
# URL RESOLUTION
# =============================================================

def get_database_url() -> str:
    """Get async database URL from environment."""
    url = os.getenv("DATABASE_URL")
    if not url:
        logger.warning(f"DATABASE_URL not set, using default: {DEFAULT_DATABASE_URL}")
        return DEFAULT_DATABASE_URL

    # Plain PostgreSQL URLs are upgraded to the async driver
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

    return url


def _redact(url: str) -> str:
    return url.split("@")[-1]


# =============================================================
# DATABASE
# =============================================================

class Database:
    """
    Async engine plus session factory.

    Usage:
        db = Database.from_env()
        await db.create_all()
        async with db.session_scope() as session:
            session.add(record)
            # Commits automatically at end
    """

    def __init__(self, url: str, echo: bool = False):
        self._url = url
        engine_kwargs = {"echo": echo, "future": True}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_size=10, max_overflow=20, pool_recycle=1800)

        logger.info(f"Creating database engine for: {_redact(url)}")
        self._engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )

    @classmethod
    def from_env(cls, echo: bool = False) -> "Database":
        return cls(get_database_url(), echo=echo)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def url(self) -> str:
        return self._url

    def session(self) -> AsyncSession:
        """
        Get a new session.

        IMPORTANT: Caller is responsible for committing/closing.
        Prefer session_scope() instead.
        """
        return self._session_factory()

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """
        Transaction boundary.

        Commits only if no exception occurs; rolls back on any
        exception and re-raises it unchanged.
        """
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            await session.rollback()
            raise
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Create all tables defined in ORM models."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database schema ready ({len(Base.metadata.tables)} tables)")

    async def verify_connection(self) -> bool:
        """
        Verify database connection is working.

        Raises:
            DatabaseConnectionError if connection fails
        """
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseConnectionError(f"Cannot connect to database: {e}") from e

    async def dispose(self) -> None:
        await self._engine.dispose()
