"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from permit_payments.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_engine():
    """
    Fresh engine + session factory for a Celery task.

    Each task runs in its own event loop; a module-level engine would be
    bound to a loop that no longer exists.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )
    try:
        yield async_sessionmaker(
            bind=task_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
    finally:
        await task_engine.dispose()


def after_commit(session: AsyncSession, callback: Callable[[], Awaitable[Any]]) -> None:
    """Queue ``callback`` to run once ``session`` is committed with commit_and_notify."""
    session.info.setdefault("after_commit", []).append(callback)


async def commit_and_notify(session: AsyncSession) -> None:
    """Commit, then run the callbacks queued with after_commit. A failed commit drops them."""
    callbacks = session.info.pop("after_commit", [])
    await session.commit()
    for callback in callbacks:
        await callback()
