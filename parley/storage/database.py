"""Async database engine and session management."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from parley.config import Settings
from parley.storage.models import Base


class Database:
    def __init__(self, settings: Settings) -> None:
        engine_kwargs: dict = {"echo": settings.log_level == "debug"}
        if not settings.db_url.startswith("sqlite"):
            engine_kwargs["pool_size"] = settings.db_pool_size
            engine_kwargs["max_overflow"] = settings.db_max_overflow
        self.engine = create_async_engine(settings.db_url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Verify the connection and create missing tables."""
        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup."""
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
