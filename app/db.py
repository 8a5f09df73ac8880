from __future__ import annotations

"""Async database helper shared by the stores."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from engine.errors import PersistenceFailure

# Imported for table registration on SQLModel.metadata.
import app.models  # noqa: F401
import engine.sql_checkpoint  # noqa: F401


class Database:
    """Owns the async engine; hands out sessions and transactions."""

    def __init__(self, database_url: str) -> None:
        kwargs: dict = {"echo": False, "future": True}
        if database_url.startswith("sqlite"):
            # One connection per session keeps aiosqlite off foreign event loops.
            kwargs["poolclass"] = NullPool
            kwargs["connect_args"] = {"check_same_thread": False}
        self.engine: AsyncEngine = create_async_engine(database_url, **kwargs)

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with AsyncSession(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session with an open transaction, committed on clean exit."""

        async with self.session() as session:
            async with session.begin():
                yield session


__all__ = ["Database"]
