from collections.abc import AsyncGenerator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import settings


class Base(DeclarativeBase):
    pass


# ─── Async (API) ───────────────────────────────────────
engine = create_async_engine(settings.database_url, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


# ─── Sync (Celery worker) ──────────────────────────────
# Created on first use so importing task modules never needs a live driver
_sync_engine: Engine | None = None


def get_sync_engine() -> Engine:
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(settings.database_url_sync, pool_pre_ping=True)
    return _sync_engine


@contextmanager
def sync_session() -> Iterator[Session]:
    """Short-lived sync session for a Celery task."""
    factory = sessionmaker(bind=get_sync_engine(), expire_on_commit=False)
    with factory() as db:
        yield db
