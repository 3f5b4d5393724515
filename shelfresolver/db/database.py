"""
Database engine and session management.

Provides the async SQLAlchemy engine and session factory. Pipeline
components take a session factory rather than a session so concurrent
workers each get their own unit of work.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from shelfresolver.config import settings
from shelfresolver.models.db import Base

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """
    Initialize database tables.

    Creates all tables defined in the ORM models.
    Run once before the first pipeline run against a new database.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
