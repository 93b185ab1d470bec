"""
Database Configuration
======================

SQLAlchemy async database setup with connection pooling and session management.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import NullPool

from socialvault.core.config import settings
from socialvault.models.base import Base


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the driver."""
    engine_kwargs: dict = dict(echo=echo)

    if settings.APP_ENV == "test" or url.startswith("sqlite"):
        # SQLite files and per-test databases do not benefit from pooling.
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 20

    return create_async_engine(url, **engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# Session factory
async_session_factory = build_session_factory(engine)


async def create_db_and_tables(bind: AsyncEngine | None = None) -> None:
    """
    Create database tables if they don't exist.

    Note: In production, use migrations instead.
    This is primarily for development convenience.
    """
    import socialvault.models  # noqa: F401  (register mappers)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

