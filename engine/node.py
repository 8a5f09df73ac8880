from __future__ import annotations

"""Node definitions for the workflow engine."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

from engine.state import StatePatch, WorkflowState

NodeKind = Literal["step", "suspend"]

NodeCallable = Callable[[WorkflowState], Any | Awaitable[Any]]
"""Step nodes return a ``StatePatch`` (or None); suspend nodes return the interrupt payload."""

ResumeCallable = Callable[[WorkflowState, Any], StatePatch | Awaitable[StatePatch]]
"""Maps a decision value onto a state patch when a suspended thread resumes."""


@dataclass(slots=True)
class Node:
    """Represents a workflow node wrapping an executable callable."""

    id: str
    name: str
    func: NodeCallable
    kind: NodeKind = "step"
    on_resume: Optional[ResumeCallable] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_suspend(self) -> bool:
        return self.kind == "suspend"


def build_node(
    node_id: str,
    *,
    name: Optional[str] = None,
    func: NodeCallable,
    metadata: Optional[Dict[str, Any]] = None,
) -> Node:
    """Factory helper to construct a step Node."""

    return Node(
        id=node_id,
        name=name or node_id,
        func=func,
        metadata=metadata or {},
    )


def build_suspend_node(
    node_id: str,
    *,
    name: Optional[str] = None,
    emit: NodeCallable,
    on_resume: ResumeCallable,
    metadata: Optional[Dict[str, Any]] = None,
) -> Node:
    """Factory helper for a node that pauses the thread until a decision arrives.

    ``emit`` builds the interrupt payload surfaced to the caller. ``on_resume``
    receives the decision and returns the patch that is merged as if the node
    had produced it.
    """

    return Node(
        id=node_id,
        name=name or node_id,
        func=emit,
        kind="suspend",
        on_resume=on_resume,
        metadata=metadata or {},
    )


__all__ = [
    "Node",
    "NodeCallable",
    "NodeKind",
    "ResumeCallable",
    "build_node",
    "build_suspend_node",
]
