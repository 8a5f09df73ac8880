from __future__ import annotations

"""Checkpoint records and storage backends.

A checkpoint is an immutable snapshot of a thread's state written after each
node. Checkpoints for one ``(thread_id, namespace)`` form a singly linked
chain through ``parent_checkpoint_id``. Pending writes hold a node's output
against the checkpoint it was computed from, so a crash between the node's
side effects and the next checkpoint can be reconciled on replay.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Literal, Optional, Sequence, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field

from engine.errors import CheckpointConflict, NotFound

CheckpointSource = Literal["input", "loop", "interrupt", "resume"]

Write = Tuple[str, Any]
"""A single ``(channel, value)`` pair produced by a node."""


def utcnow() -> datetime:
    """Timezone-aware current UTC time used for every stored timestamp."""

    return datetime.now(timezone.utc)


def new_checkpoint_id() -> str:
    return uuid4().hex


class CheckpointMetadata(BaseModel):
    """Bookkeeping stored alongside each snapshot."""

    source: CheckpointSource
    step: int
    node: Optional[str] = None
    next: Optional[str] = None
    interrupt: Any = None


class Checkpoint(BaseModel):
    """Immutable snapshot of workflow state after a node completed."""

    checkpoint_id: str
    thread_id: str
    namespace: str = ""
    parent_checkpoint_id: Optional[str] = None
    state: Dict[str, Any]
    metadata: CheckpointMetadata
    created_at: datetime = Field(default_factory=utcnow)


class PendingWrite(BaseModel):
    """Output proposed by a node against an existing checkpoint."""

    thread_id: str
    namespace: str = ""
    checkpoint_id: str
    step_id: str
    writes: list[Write] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class CheckpointTuple(BaseModel):
    """A checkpoint together with the writes that target it."""

    checkpoint: Checkpoint
    pending_writes: list[PendingWrite] = Field(default_factory=list)

    @property
    def parent_checkpoint_id(self) -> Optional[str]:
        return self.checkpoint.parent_checkpoint_id

    def writes_for(self, step_id: str) -> list[Write]:
        """Flatten the pending writes recorded by ``step_id``."""

        return [
            write
            for pending in self.pending_writes
            if pending.step_id == step_id
            for write in pending.writes
        ]


class CheckpointStore(ABC):
    """Append-only storage for checkpoints and pending writes."""

    @abstractmethod
    async def get_latest(
        self,
        thread_id: str,
        namespace: str = "",
        checkpoint_id: str | None = None,
    ) -> CheckpointTuple | None:
        """Return the requested checkpoint, or the newest one in ``namespace``."""
        ...

    @abstractmethod
    def list_checkpoints(
        self,
        thread_id: str,
        namespace: str = "",
        limit: int = 50,
    ) -> AsyncIterator[CheckpointTuple]:
        """Yield up to ``limit`` checkpoints for the thread, newest first."""
        ...

    @abstractmethod
    async def put(
        self,
        thread_id: str,
        namespace: str,
        parent_checkpoint_id: str | None,
        state: Dict[str, Any],
        metadata: CheckpointMetadata,
    ) -> str:
        """Insert a new checkpoint and return its id.

        ``parent_checkpoint_id`` must be the newest checkpoint in the namespace
        (None for the first one); otherwise ``CheckpointConflict`` is raised.
        """
        ...

    @abstractmethod
    async def put_writes(
        self,
        thread_id: str,
        namespace: str,
        checkpoint_id: str,
        step_id: str,
        writes: Sequence[Write],
    ) -> None:
        """Attach pending writes to an existing checkpoint."""
        ...

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> None:
        """Remove every checkpoint and pending write of the thread."""
        ...


class InMemoryCheckpointStore(CheckpointStore):
    """In-memory checkpoint storage for development and testing.

    Data does not survive the process. Thread-safe within one event loop via
    ``asyncio.Lock``.
    """

    def __init__(self) -> None:
        self._checkpoints: Dict[Tuple[str, str], list[Checkpoint]] = defaultdict(list)
        self._writes: Dict[str, list[PendingWrite]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _tuple(self, checkpoint: Checkpoint) -> CheckpointTuple:
        return CheckpointTuple(
            checkpoint=checkpoint.model_copy(deep=True),
            pending_writes=[w.model_copy(deep=True) for w in self._writes[checkpoint.checkpoint_id]],
        )

    async def get_latest(
        self,
        thread_id: str,
        namespace: str = "",
        checkpoint_id: str | None = None,
    ) -> CheckpointTuple | None:
        async with self._lock:
            chain = self._checkpoints.get((thread_id, namespace), [])
            if checkpoint_id is None:
                return self._tuple(chain[-1]) if chain else None
            for checkpoint in chain:
                if checkpoint.checkpoint_id == checkpoint_id:
                    return self._tuple(checkpoint)
            return None

    async def list_checkpoints(
        self,
        thread_id: str,
        namespace: str = "",
        limit: int = 50,
    ) -> AsyncIterator[CheckpointTuple]:
        async with self._lock:
            chain = list(self._checkpoints.get((thread_id, namespace), []))
            snapshot = [self._tuple(c) for c in reversed(chain)][:limit]
        for item in snapshot:
            yield item

    async def put(
        self,
        thread_id: str,
        namespace: str,
        parent_checkpoint_id: str | None,
        state: Dict[str, Any],
        metadata: CheckpointMetadata,
    ) -> str:
        async with self._lock:
            chain = self._checkpoints[(thread_id, namespace)]
            latest = chain[-1].checkpoint_id if chain else None
            if latest != parent_checkpoint_id:
                raise CheckpointConflict(
                    f"Thread '{thread_id}' moved to {latest!r}; refusing to write on top of {parent_checkpoint_id!r}."
                )
            checkpoint = Checkpoint(
                checkpoint_id=new_checkpoint_id(),
                thread_id=thread_id,
                namespace=namespace,
                parent_checkpoint_id=parent_checkpoint_id,
                state=copy.deepcopy(state),
                metadata=metadata.model_copy(deep=True),
            )
            chain.append(checkpoint)
            return checkpoint.checkpoint_id

    async def put_writes(
        self,
        thread_id: str,
        namespace: str,
        checkpoint_id: str,
        step_id: str,
        writes: Sequence[Write],
    ) -> None:
        async with self._lock:
            chain = self._checkpoints.get((thread_id, namespace), [])
            if not any(c.checkpoint_id == checkpoint_id for c in chain):
                raise NotFound(f"Checkpoint '{checkpoint_id}' not found for thread '{thread_id}'.")
            self._writes[checkpoint_id].append(
                PendingWrite(
                    thread_id=thread_id,
                    namespace=namespace,
                    checkpoint_id=checkpoint_id,
                    step_id=step_id,
                    writes=[(channel, copy.deepcopy(value)) for channel, value in writes],
                )
            )

    async def delete_thread(self, thread_id: str) -> None:
        async with self._lock:
            for key in [k for k in self._checkpoints if k[0] == thread_id]:
                for checkpoint in self._checkpoints.pop(key):
                    self._writes.pop(checkpoint.checkpoint_id, None)


__all__ = [
    "utcnow",
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointSource",
    "CheckpointStore",
    "CheckpointTuple",
    "InMemoryCheckpointStore",
    "PendingWrite",
    "Write",
    "new_checkpoint_id",
]
