"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for all CRM tables
- get_engine(): Lazily created AsyncEngine singleton
- get_session(): Async generator yielding an AsyncSession (session_factory)
- open_session(): Context manager entering one session from a session_factory
- init_db() / close_db(): Lifespan hooks for the FastAPI app
- escape_like(): LIKE pattern escaping for user-supplied text
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

crm_metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class Base(DeclarativeBase):
    """Base class for CRM models."""

    metadata = crm_metadata


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine.

    Repositories receive this callable as their session_factory and open
    their own transactions on the yielded session.
    """
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


@asynccontextmanager
async def open_session(
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
) -> AsyncIterator[AsyncSession]:
    """Enter one session from a session_factory and close the generator on exit."""
    async with aclosing(session_factory()) as sessions:
        async for session in sessions:
            yield session
            return


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Verify connectivity on startup. Schema is owned by Alembic."""
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None


# ── Query Helpers ───────────────────────────────────────────────────────────


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user text matches literally (escape char '\\')."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
