"""
Database Configuration

Async SQLAlchemy engine, session factory and declarative base.
"""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a database session.

    Commits when the request handler returns normally and rolls back
    on any exception.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """
    Verify the database connection on startup.

    In development the schema is created directly from the models.
    """
    # Import models so they register with the metadata
    from app.modules.auth import models as auth_models  # noqa: F401
    from app.modules.schools import models as school_models  # noqa: F401
    from app.modules.users import models as user_models  # noqa: F401

    async with engine.begin() as conn:
        if settings.is_development:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema ensured (development)")


async def close_db() -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
