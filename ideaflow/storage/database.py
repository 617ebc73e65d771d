"""Async engine and session factory for the record store.

PostgreSQL (asyncpg) in production; SQLite (aiosqlite) runs the same
models in-memory for tests.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ideaflow.config import Settings
from ideaflow.storage.models import Base


def _engine_options(settings: Settings) -> dict[str, Any]:
    if settings.is_sqlite:
        # one shared connection keeps an in-memory database alive across sessions
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_size": settings.db_pool_size, "max_overflow": settings.db_max_overflow}


class Database:
    def __init__(self, settings: Settings) -> None:
        self.engine = create_async_engine(
            settings.db_url,
            echo=settings.log_level == "debug",
            **_engine_options(settings),
        )
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Fail fast if the database is unreachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session
