from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
from fastapi import HTTPException, Request
from typing import AsyncGenerator, Optional
import logging

from config import Settings

# Configure logging
logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


class Database:
    """
    Owns the async engine and session factory.
    Constructed once per application (see main.lifespan) and passed around
    explicitly instead of living at module level.
    """

    def __init__(self, url: str, **engine_options):
        self.url = url
        self.engine_options = engine_options
        self.engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        options = {}
        # Pool sizing only applies to server databases
        if not settings.DATABASE_URL.startswith("sqlite"):
            options.update(
                pool_pre_ping=settings.DB_POOL_PRE_PING,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_recycle=settings.DB_POOL_RECYCLE,
                pool_timeout=30,
            )
        if settings.DATABASE_URL.startswith("postgresql+asyncpg"):
            options["connect_args"] = {
                "server_settings": {"application_name": "card_platform"}
            }
        return cls(settings.DATABASE_URL, **options)

    async def init(self, create_tables: bool = False):
        """Create the engine and, optionally, any missing tables."""
        self.engine = create_async_engine(self.url, future=True, **self.engine_options)
        self._session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Don't expire objects after commit
            autoflush=False,
        )
        if create_tables:
            # Make sure every model is registered on Base.metadata
            import models  # noqa: F401

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables ensured")

    def session(self) -> AsyncSession:
        if self._session_maker is None:
            raise RuntimeError("Database.init() has not been called")
        return self._session_maker()

    async def check_connection(self) -> bool:
        """
        Check if database connection is healthy.
        Useful for health check endpoints.
        """
        if self.engine is None:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection failed: {str(e)}")
            return False

    async def close(self):
        """
        Close all database connections gracefully.
        Call this on application shutdown.
        """
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self._session_maker = None
            logger.info("Database connections closed")


def get_database(request: Request) -> Database:
    return request.app.state.db


# Dependency for FastAPI routes
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency with proper transaction management.
    Handlers commit explicitly; anything left uncommitted is rolled back.
    """
    async with get_database(request).session() as session:
        try:
            yield session
        except HTTPException:
            await session.rollback()
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Database error: {str(e)}", exc_info=True)
            raise
