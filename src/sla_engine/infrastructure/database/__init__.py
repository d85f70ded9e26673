"""
Database Infrastructure
=======================

Async engine and session lifecycle on SQLAlchemy 2.0 (asyncpg in production,
aiosqlite in tests). The engine relies on per-row atomicity only: each ticket
is written in its own commit and nothing spans tickets.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from sla_engine.config import settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine not initialized. Call init_database() first.")
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory for the sweep job and the advisory lock."""
    if _session_maker is None:
        raise RuntimeError("Database engine not initialized. Call init_database() first.")
    return _session_maker


def _engine_for(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # One shared connection so an in-memory database survives across sessions
        return create_async_engine(
            url,
            echo=settings.debug,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    # asyncpg expects ssl= rather than sslmode=
    return create_async_engine(
        url.replace("sslmode=", "ssl="),
        echo=settings.debug,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


def init_database(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Build the engine and session maker. Called once at startup.

    Args:
        database_url: Overrides settings.database_url (tests pass SQLite)
    """
    global _engine, _session_maker

    _engine = _engine_for(database_url or settings.database_url)
    _session_maker = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


async def close_database() -> None:
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Session that commits when the block exits cleanly and rolls back otherwise.

    Used directly by the sweep job and seeding, and through `get_session`
    by request handlers.
    """
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency wrapping `get_session_context`."""
    async with get_session_context() as session:
        yield session


async def create_tables() -> None:
    """Create the schema directly; deployments manage it with migrations instead."""
    from sla_engine.sla.infrastructure import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
