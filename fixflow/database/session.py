"""Database session management using SQLModel + async SQLAlchemy."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from fixflow.config import get_settings


SessionMaker = async_sessionmaker[AsyncSession]

_engine: AsyncEngine | None = None
_session_maker: SessionMaker | None = None


def build_engine(database_url: str, *, echo: bool = False, pool_size: int = 5, max_overflow: int = 10) -> AsyncEngine:
    """Create an async engine. SQLite URLs open a connection per session."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, poolclass=NullPool)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def build_session_maker(engine: AsyncEngine) -> SessionMaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get the process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    return _engine


def get_session_maker() -> SessionMaker:
    """Get the process-wide session factory."""
    global _session_maker
    if _session_maker is None:
        _session_maker = build_session_maker(get_engine())
    return _session_maker


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create any missing tables. Used in development and by the tests."""
    from fixflow.database import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None

