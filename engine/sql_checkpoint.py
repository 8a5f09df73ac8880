from __future__ import annotations

"""SQL implementation of the checkpoint store.

Rows are insert-only. ``seq`` is an autoincrement key that defines "newest"
independently of wall-clock resolution.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Sequence

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlmodel import Field, SQLModel

from engine.checkpoint import (
    Checkpoint,
    CheckpointMetadata,
    CheckpointStore,
    CheckpointTuple,
    PendingWrite,
    Write,
    new_checkpoint_id,
    utcnow,
)
from engine.errors import CheckpointConflict, NotFound, PersistenceFailure

logger = logging.getLogger("workflow.checkpoints")


class CheckpointRow(SQLModel, table=True):
    """Persisted checkpoint snapshot."""

    __tablename__ = "checkpoints"
    __table_args__ = (
        UniqueConstraint("thread_id", "namespace", "parent_checkpoint_id", name="checkpoints_parent_uq"),
    )

    seq: Optional[int] = Field(default=None, primary_key=True)
    checkpoint_id: str = Field(index=True, unique=True)
    thread_id: str = Field(index=True)
    namespace: str = Field(default="")
    # "" marks the root so two roots for one thread also collide.
    parent_checkpoint_id: str = Field(default="")
    state_blob: dict = Field(sa_column=Column(JSON, nullable=False))
    metadata_blob: dict = Field(sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class PendingWriteRow(SQLModel, table=True):
    """Persisted pending writes for a checkpoint."""

    __tablename__ = "checkpoint_writes"

    seq: Optional[int] = Field(default=None, primary_key=True)
    thread_id: str = Field(index=True)
    namespace: str = Field(default="")
    checkpoint_id: str = Field(index=True)
    step_id: str
    writes_blob: list = Field(sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


def _to_checkpoint(row: CheckpointRow) -> Checkpoint:
    return Checkpoint(
        checkpoint_id=row.checkpoint_id,
        thread_id=row.thread_id,
        namespace=row.namespace,
        parent_checkpoint_id=row.parent_checkpoint_id or None,
        state=row.state_blob,
        metadata=CheckpointMetadata.model_validate(row.metadata_blob),
        created_at=row.created_at,
    )


def _to_pending_write(row: PendingWriteRow) -> PendingWrite:
    return PendingWrite(
        thread_id=row.thread_id,
        namespace=row.namespace,
        checkpoint_id=row.checkpoint_id,
        step_id=row.step_id,
        writes=[(channel, value) for channel, value in row.writes_blob],
        created_at=row.created_at,
    )


class SQLCheckpointStore(CheckpointStore):
    """Persist checkpoints through an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def setup(self) -> None:
        """Create the checkpoint tables if they do not exist."""

        async with self._engine.begin() as conn:
            await conn.run_sync(
                SQLModel.metadata.create_all,
                tables=[CheckpointRow.__table__, PendingWriteRow.__table__],
            )

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with AsyncSession(self._engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Checkpoint storage error: %s", exc)
            raise PersistenceFailure(str(exc)) from exc

    async def _load(self, session: AsyncSession, row: CheckpointRow) -> CheckpointTuple:
        result = await session.execute(
            select(PendingWriteRow)
            .where(PendingWriteRow.checkpoint_id == row.checkpoint_id)
            .order_by(PendingWriteRow.seq)
        )
        return CheckpointTuple(
            checkpoint=_to_checkpoint(row),
            pending_writes=[_to_pending_write(w) for w in result.scalars().all()],
        )

    async def get_latest(
        self,
        thread_id: str,
        namespace: str = "",
        checkpoint_id: str | None = None,
    ) -> CheckpointTuple | None:
        query = select(CheckpointRow).where(
            CheckpointRow.thread_id == thread_id,
            CheckpointRow.namespace == namespace,
        )
        if checkpoint_id is not None:
            query = query.where(CheckpointRow.checkpoint_id == checkpoint_id)
        query = query.order_by(CheckpointRow.seq.desc()).limit(1)

        async with self._session() as session:
            row = (await session.execute(query)).scalars().first()
            if row is None:
                return None
            return await self._load(session, row)

    async def list_checkpoints(
        self,
        thread_id: str,
        namespace: str = "",
        limit: int = 50,
    ) -> AsyncIterator[CheckpointTuple]:
        query = (
            select(CheckpointRow)
            .where(
                CheckpointRow.thread_id == thread_id,
                CheckpointRow.namespace == namespace,
            )
            .order_by(CheckpointRow.seq.desc())
            .limit(limit)
        )
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            items = [await self._load(session, row) for row in rows]
        for item in items:
            yield item

    async def put(
        self,
        thread_id: str,
        namespace: str,
        parent_checkpoint_id: str | None,
        state: Dict[str, Any],
        metadata: CheckpointMetadata,
    ) -> str:
        row = CheckpointRow(
            checkpoint_id=new_checkpoint_id(),
            thread_id=thread_id,
            namespace=namespace,
            parent_checkpoint_id=parent_checkpoint_id or "",
            state_blob=state,
            metadata_blob=metadata.model_dump(mode="json"),
        )
        async with self._session() as session:
            try:
                async with session.begin():
                    latest = (
                        await session.execute(
                            select(CheckpointRow.checkpoint_id)
                            .where(
                                CheckpointRow.thread_id == thread_id,
                                CheckpointRow.namespace == namespace,
                            )
                            .order_by(CheckpointRow.seq.desc())
                            .limit(1)
                        )
                    ).scalar_one_or_none()
                    if latest != parent_checkpoint_id:
                        raise CheckpointConflict(
                            f"Thread '{thread_id}' moved to {latest!r}; refusing to write on top of {parent_checkpoint_id!r}."
                        )
                    session.add(row)
            except IntegrityError as exc:
                raise CheckpointConflict(
                    f"Thread '{thread_id}' already has a child of {parent_checkpoint_id!r}."
                ) from exc
        return row.checkpoint_id

    async def put_writes(
        self,
        thread_id: str,
        namespace: str,
        checkpoint_id: str,
        step_id: str,
        writes: Sequence[Write],
    ) -> None:
        async with self._session() as session:
            async with session.begin():
                exists = (
                    await session.execute(
                        select(CheckpointRow.seq).where(
                            CheckpointRow.thread_id == thread_id,
                            CheckpointRow.namespace == namespace,
                            CheckpointRow.checkpoint_id == checkpoint_id,
                        )
                    )
                ).scalar_one_or_none()
                if exists is None:
                    raise NotFound(f"Checkpoint '{checkpoint_id}' not found for thread '{thread_id}'.")
                session.add(
                    PendingWriteRow(
                        thread_id=thread_id,
                        namespace=namespace,
                        checkpoint_id=checkpoint_id,
                        step_id=step_id,
                        writes_blob=[[channel, value] for channel, value in writes],
                    )
                )

    async def delete_thread(self, thread_id: str) -> None:
        async with self._session() as session:
            async with session.begin():
                await session.execute(delete(PendingWriteRow).where(PendingWriteRow.thread_id == thread_id))
                await session.execute(delete(CheckpointRow).where(CheckpointRow.thread_id == thread_id))
        logger.info("Deleted checkpoint lineage for thread %s", thread_id)


__all__ = ["CheckpointRow", "PendingWriteRow", "SQLCheckpointStore"]
