"""
Database engine and session factory construction.

The engine and session factory are built once at process start (see
``tenantguard.core.container``) and handed to the services that need them.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantguard.config import settings


def create_engine(database_url: str | None = None, **overrides: Any) -> AsyncEngine:
    """
    Create the async engine.

    Pool sizing only applies to server databases; SQLite (tests, local runs)
    uses SQLAlchemy's default pool for its driver.
    """
    url = database_url or settings.DATABASE_URL
    kwargs: dict[str, Any] = {"echo": settings.DB_ECHO}

    if url.startswith("sqlite"):
        # Give concurrent writers time to wait on the file lock instead of failing
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections every hour (MariaDB wait_timeout is 8 hours)
        )

    kwargs.update(overrides)
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the async session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
