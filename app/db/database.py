"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings


def utcnow() -> datetime:
    """Naive UTC now. All DateTime columns store naive UTC (SQLite has no tz type)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _engine_kwargs(**overrides: Any) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if settings.DATABASE_URL.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(overrides)
    return kwargs


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs())

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Fresh engine + session for a Celery task.

    Every task runs on its own event loop; asyncpg connections from the
    module-level engine are bound to the loop that opened them.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        **_engine_kwargs(pool_size=5, max_overflow=10)
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()
