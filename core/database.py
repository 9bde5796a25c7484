"""
Database session management with SQLAlchemy async
"""

from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine; the driver is only imported here."""
    url = database_url or settings.DATABASE_URL
    logger.debug(f"Creating async engine for {url.split('@')[-1]}")
    return create_async_engine(
        url,
        echo=settings.ENVIRONMENT == "development" and settings.LOG_LEVEL.upper() == "DEBUG",
        poolclass=NullPool,
        future=True
    )


def create_session_factory(
    database_url: Optional[str] = None,
    engine: Optional[AsyncEngine] = None
) -> async_sessionmaker:
    """Create a session factory bound to the given engine or URL"""
    return async_sessionmaker(
        engine or create_engine(database_url),
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )
