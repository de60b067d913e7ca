import os
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _engine_kwargs(database_url: str) -> dict:
    kwargs = {"echo": False, "future": True}
    if (database_url or "").lower().startswith("sqlite"):
        return kwargs
    # Cloud SQL / Postgres connections can be dropped when idle; pre-ping avoids "connection is closed" errors.
    kwargs.update({
        "pool_pre_ping": True,
        "pool_recycle": int(os.environ.get("DB_POOL_RECYCLE_SECONDS", "300").strip() or 300),
    })
    if os.environ.get("DB_POOL_SIZE"):
        kwargs["pool_size"] = int(os.environ.get("DB_POOL_SIZE", "").strip() or 5)
    if os.environ.get("DB_MAX_OVERFLOW"):
        kwargs["max_overflow"] = int(os.environ.get("DB_MAX_OVERFLOW", "").strip() or 10)
    if os.environ.get("DB_POOL_TIMEOUT"):
        kwargs["pool_timeout"] = int(os.environ.get("DB_POOL_TIMEOUT", "").strip() or 30)
    return kwargs


class Database:
    """Owns the engine and session factory for one process.

    Built once at startup and handed to the app; `init()` creates tables and
    `dispose()` closes pooled connections on shutdown.
    """

    def __init__(self, database_url: str, engine: AsyncEngine | None = None):
        self.url = database_url
        self.engine = engine or create_async_engine(database_url, **_engine_kwargs(database_url))
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def init(self) -> None:
        """Create tables (lightweight, safe to run repeatedly)."""
        from . import models  # noqa: F401  ensure models are registered

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an async session from the app's Database."""
    database: Database = request.app.state.database
    async with database.sessionmaker() as session:
        yield session
