from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from maes.core.config import settings


# Main engine for FastAPI (uses connection pooling)
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# === Worker session factory (SINGLETON) ===
# Each Celery task runs its coroutine in a fresh event loop, so pooled
# connections must never outlive the task: NullPool opens one per session.

_worker_engine = None
_worker_session_factory = None


def _get_worker_engine():
    global _worker_engine
    if _worker_engine is None:
        _worker_engine = create_async_engine(
            settings.DATABASE_URL,
            echo=False,
            future=True,
            poolclass=NullPool,
        )
    return _worker_engine


def _get_worker_session_factory():
    global _worker_session_factory
    if _worker_session_factory is None:
        _worker_session_factory = async_sessionmaker(
            _get_worker_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    return _worker_session_factory


@asynccontextmanager
async def get_worker_db():
    """
    Session context for Celery tasks.
    Usage:
        async with get_worker_db() as db:
            await lifecycle.run_purge_job(db, job_id)
    """
    session_factory = _get_worker_session_factory()
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def dispose_worker_engine():
    """Dispose the worker engine on Celery worker shutdown."""
    global _worker_engine, _worker_session_factory
    if _worker_engine is not None:
        await _worker_engine.dispose()
        _worker_engine = None
        _worker_session_factory = None
