"""Database configuration and session management."""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from launchpad_engine.core.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


def create_engine_for(database_path: Path, echo: bool = False) -> AsyncEngine:
    """Create an async SQLite engine for the given file."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=echo,
        future=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Default engine and session factory
engine = create_engine_for(settings.DATABASE_PATH, echo=settings.DEBUG)
async_session_maker = create_session_maker(engine)


async def init_db(target: Optional[AsyncEngine] = None) -> None:
    """Initialize the database, creating tables if needed."""
    from launchpad_engine.models import job, status  # noqa: F401
    
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    logger.info("Database tables created/verified")


async def close_db(target: Optional[AsyncEngine] = None) -> None:
    """Close database connections."""
    await (target or engine).dispose()
    logger.info("Database connections closed")

