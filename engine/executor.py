from __future__ import annotations

"""Durable workflow executor with checkpointing and interrupt/resume."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from engine.checkpoint import CheckpointMetadata, CheckpointStore, CheckpointTuple, utcnow
from engine.errors import InvalidDecision, NotFound, NotSuspended
from engine.graph import Graph
from engine.state import StatePatch, WorkflowState

logger = logging.getLogger("workflow.engine")

ExecutionLogStatus = Literal["success", "failed", "suspended", "replayed", "resumed"]


class ExecutionLog(BaseModel):
    """Structured log entry for a node execution."""

    node_id: str
    status: ExecutionLogStatus
    timestamp: datetime = Field(default_factory=utcnow)
    message: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class Completed:
    """The graph ran to its end."""

    thread_id: str
    state: WorkflowState
    checkpoint_id: str
    logs: list[ExecutionLog] = field(default_factory=list)
    status: Literal["completed"] = "completed"


@dataclass(frozen=True)
class Suspended:
    """The thread is parked at a suspend node waiting for a decision."""

    thread_id: str
    node_id: str
    payload: Any
    checkpoint_id: str
    logs: list[ExecutionLog] = field(default_factory=list)
    status: Literal["suspended"] = "suspended"


@dataclass(frozen=True)
class Failed:
    """A node or the store raised; the thread stays at its last good checkpoint."""

    thread_id: str
    node_id: str | None
    error: BaseException
    checkpoint_id: str | None
    logs: list[ExecutionLog] = field(default_factory=list)
    status: Literal["failed"] = "failed"

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


RunOutcome = Union[Completed, Suspended, Failed]


@dataclass(frozen=True)
class ThreadSnapshot:
    """Typed view of a checkpoint for inspection and time-travel."""

    thread_id: str
    namespace: str
    checkpoint_id: str
    parent_checkpoint_id: str | None
    state: WorkflowState
    metadata: CheckpointMetadata
    created_at: datetime

    @property
    def next_node(self) -> str | None:
        return self.metadata.next

    @property
    def is_suspended(self) -> bool:
        return self.metadata.source == "interrupt"


class Executor:
    """Runs a graph against a checkpoint store, one node at a time.

    Each completed node is committed as a new checkpoint before the next node
    starts. Suspend nodes end the call with a ``Suspended`` outcome; ``resume``
    continues the same thread from the persisted checkpoint, in this process
    or another one.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        log_hook: Optional[Callable[[ExecutionLog], None]] = None,
    ) -> None:
        self._store = store
        self._log_hook = log_hook
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def store(self) -> CheckpointStore:
        return self._store

    def _lock_for(self, thread_id: str, namespace: str) -> asyncio.Lock:
        key = f"{thread_id}:{namespace}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def invoke(
        self,
        graph: Graph,
        thread_id: str,
        initial_state: WorkflowState | Mapping[str, Any],
        *,
        namespace: str = "",
    ) -> RunOutcome:
        """Start a thread, or continue it from its latest checkpoint.

        ``initial_state`` is only used when the thread has no checkpoints yet.
        """

        async with self._lock_for(thread_id, namespace):
            logs: list[ExecutionLog] = []
            try:
                latest = await self._store.get_latest(thread_id, namespace)
                if latest is None:
                    state = self._coerce_state(graph, initial_state)
                    checkpoint_id = await self._store.put(
                        thread_id,
                        namespace,
                        None,
                        state.to_blob(),
                        CheckpointMetadata(source="input", step=0, next=graph.start_node),
                    )
                    logger.info("Thread %s started on graph %s", thread_id, graph.id)
                    return await self._advance(
                        graph, thread_id, namespace, state, checkpoint_id, 0, graph.start_node, logs
                    )
            except Exception as exc:
                logger.exception("Thread %s could not start: %s", thread_id, exc)
                return Failed(thread_id=thread_id, node_id=None, error=exc, checkpoint_id=None, logs=logs)

            snapshot = self._snapshot(graph, latest)
            if snapshot.is_suspended:
                logger.info("Thread %s is already waiting at %s", thread_id, snapshot.metadata.node)
                return Suspended(
                    thread_id=thread_id,
                    node_id=snapshot.metadata.node or "",
                    payload=snapshot.metadata.interrupt,
                    checkpoint_id=snapshot.checkpoint_id,
                    logs=logs,
                )

            logger.info("Thread %s continuing from checkpoint %s", thread_id, snapshot.checkpoint_id)
            return await self._advance(
                graph,
                thread_id,
                namespace,
                snapshot.state,
                snapshot.checkpoint_id,
                snapshot.metadata.step,
                snapshot.next_node,
                logs,
                pending=latest,
            )

    async def resume(
        self,
        graph: Graph,
        thread_id: str,
        decision: Any,
        *,
        namespace: str = "",
    ) -> RunOutcome:
        """Feed ``decision`` into the suspend node the thread is parked at and continue.

        Raises ``NotFound`` when the thread has no checkpoints, ``NotSuspended``
        when it is not waiting, and ``InvalidDecision`` when the node's resume
        handler rejects the decision. Nothing is written in those cases.
        """

        async with self._lock_for(thread_id, namespace):
            latest = await self._store.get_latest(thread_id, namespace)
            if latest is None:
                raise NotFound(f"Thread '{thread_id}' has no checkpoints.")

            snapshot = self._snapshot(graph, latest)
            if not snapshot.is_suspended or snapshot.metadata.node is None:
                raise NotSuspended(f"Thread '{thread_id}' is not waiting for a decision.")

            node = graph.get_node(snapshot.metadata.node)
            if node.on_resume is None:
                raise InvalidDecision(f"Node '{node.id}' cannot be resumed.")

            patch = self._jsonable(await self._call(node.on_resume, snapshot.state, decision))
            logs: list[ExecutionLog] = []
            try:
                state = snapshot.state.apply(patch)
                await self._store.put_writes(
                    thread_id, namespace, snapshot.checkpoint_id, node.id, list(patch.items())
                )
                following = graph.next_node(node.id)
                step = snapshot.metadata.step + 1
                checkpoint_id = await self._store.put(
                    thread_id,
                    namespace,
                    snapshot.checkpoint_id,
                    state.to_blob(),
                    CheckpointMetadata(source="resume", step=step, node=node.id, next=following),
                )
            except Exception as exc:
                logger.exception("Thread %s could not record decision: %s", thread_id, exc)
                self._emit(logs, ExecutionLog(node_id=node.id, status="failed", message="Resume failed", error=str(exc)))
                return Failed(
                    thread_id=thread_id,
                    node_id=node.id,
                    error=exc,
                    checkpoint_id=snapshot.checkpoint_id,
                    logs=logs,
                )

            self._emit(logs, ExecutionLog(node_id=node.id, status="resumed", message="Decision received"))
            logger.info("Thread %s resumed at %s", thread_id, node.id)
            return await self._advance(graph, thread_id, namespace, state, checkpoint_id, step, following, logs)

    async def get_state(
        self,
        graph: Graph,
        thread_id: str,
        *,
        namespace: str = "",
        checkpoint_id: str | None = None,
    ) -> ThreadSnapshot | None:
        """Return the latest (or an explicitly requested) snapshot of the thread."""

        latest = await self._store.get_latest(thread_id, namespace, checkpoint_id)
        return self._snapshot(graph, latest) if latest else None

    async def history(
        self,
        thread_id: str,
        *,
        namespace: str = "",
        limit: int = 50,
    ) -> list[CheckpointTuple]:
        """Checkpoints of the thread, newest first."""

        return [item async for item in self._store.list_checkpoints(thread_id, namespace, limit)]

    async def _advance(
        self,
        graph: Graph,
        thread_id: str,
        namespace: str,
        state: WorkflowState,
        checkpoint_id: str,
        step: int,
        next_id: str | None,
        logs: list[ExecutionLog],
        *,
        pending: CheckpointTuple | None = None,
    ) -> RunOutcome:
        """Execute nodes from ``next_id`` until the graph ends, suspends or fails."""

        while next_id:
            node = graph.get_node(next_id)
            following = graph.next_node(node.id)
            try:
                if node.is_suspend:
                    payload = self._jsonable(await self._call(node.func, state))
                    checkpoint_id = await self._store.put(
                        thread_id,
                        namespace,
                        checkpoint_id,
                        state.to_blob(),
                        CheckpointMetadata(
                            source="interrupt",
                            step=step + 1,
                            node=node.id,
                            next=node.id,
                            interrupt=payload,
                        ),
                    )
                    self._emit(logs, ExecutionLog(node_id=node.id, status="suspended", message="Waiting for decision"))
                    logger.info("Thread %s suspended at %s", thread_id, node.id)
                    return Suspended(
                        thread_id=thread_id,
                        node_id=node.id,
                        payload=payload,
                        checkpoint_id=checkpoint_id,
                        logs=logs,
                    )

                replay = pending.writes_for(node.id) if pending else []
                pending = None
                if replay:
                    patch: StatePatch = dict(replay)
                    log_entry = ExecutionLog(node_id=node.id, status="replayed", message="Pending writes applied")
                else:
                    patch = self._jsonable(await self._call(node.func, state) or {})
                    await self._store.put_writes(
                        thread_id, namespace, checkpoint_id, node.id, list(patch.items())
                    )
                    log_entry = ExecutionLog(node_id=node.id, status="success")

                state = state.apply(patch)
                step += 1
                checkpoint_id = await self._store.put(
                    thread_id,
                    namespace,
                    checkpoint_id,
                    state.to_blob(),
                    CheckpointMetadata(source="loop", step=step, node=node.id, next=following),
                )
            except Exception as exc:
                logger.exception("Thread %s failed at %s: %s", thread_id, node.id, exc)
                self._emit(
                    logs,
                    ExecutionLog(node_id=node.id, status="failed", message="Node execution failed", error=str(exc)),
                )
                return Failed(
                    thread_id=thread_id,
                    node_id=node.id,
                    error=exc,
                    checkpoint_id=checkpoint_id,
                    logs=logs,
                )

            self._emit(logs, log_entry)
            logger.debug("Thread %s committed %s at step %s", thread_id, node.id, step)
            next_id = following

        logger.info("Thread %s completed", thread_id)
        return Completed(thread_id=thread_id, state=state, checkpoint_id=checkpoint_id, logs=logs)

    def _emit(self, logs: list[ExecutionLog], entry: ExecutionLog) -> None:
        logs.append(entry)
        if self._log_hook:
            self._log_hook(entry)

    @staticmethod
    def _coerce_state(graph: Graph, state: WorkflowState | Mapping[str, Any]) -> WorkflowState:
        if isinstance(state, graph.state_model):
            return state
        if isinstance(state, WorkflowState):
            return graph.state_model.model_validate(state.model_dump())
        return graph.state_model.model_validate(dict(state))

    @staticmethod
    def _snapshot(graph: Graph, item: CheckpointTuple) -> ThreadSnapshot:
        checkpoint = item.checkpoint
        return ThreadSnapshot(
            thread_id=checkpoint.thread_id,
            namespace=checkpoint.namespace,
            checkpoint_id=checkpoint.checkpoint_id,
            parent_checkpoint_id=checkpoint.parent_checkpoint_id,
            state=graph.state_model.model_validate(checkpoint.state),
            metadata=checkpoint.metadata,
            created_at=checkpoint.created_at,
        )

    @staticmethod
    def _jsonable(value: Any) -> Any:
        return to_jsonable_python(value)

    @staticmethod
    async def _call(func: Callable[..., Any], *args: Any) -> Any:
        """Await coroutine functions; run plain callables in a worker thread."""

        if inspect.iscoroutinefunction(func):
            return await func(*args)
        result = await asyncio.to_thread(func, *args)
        if isinstance(result, Awaitable):
            return await result
        return result


__all__ = [
    "Completed",
    "ExecutionLog",
    "Executor",
    "Failed",
    "RunOutcome",
    "Suspended",
    "ThreadSnapshot",
]
