"""Async engine and session factory for the location store."""

from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from delivery_locations.core.config import settings


def build_engine(url: str) -> AsyncEngine:
    """Create the engine; queue-pool sizing only applies to server databases."""
    options: dict[str, Any] = {"echo": settings.DEBUG}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    return create_async_engine(url, **options)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an async database session."""

    async with SessionLocal() as session:
        yield session
