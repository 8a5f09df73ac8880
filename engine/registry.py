from __future__ import annotations

"""Registry of workflow definitions keyed by run kind."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from engine.errors import NotFound
from engine.graph import Graph
from engine.state import WorkflowState


def _dump_state(state: WorkflowState) -> Dict[str, Any]:
    return state.to_blob()


@dataclass(frozen=True)
class WorkflowDefinition:
    """Everything needed to start, resume and report on one kind of workflow.

    ``initial_state`` receives ``(run_id, company_id, inputs)``. ``preflight``
    runs before a Run row exists and may raise ``NotFound``. ``summarize``
    turns the final state into the Run's output payload.
    """

    kind: str
    graph: Graph
    input_model: type[BaseModel]
    decision_model: type[BaseModel]
    initial_state: Callable[[str, str, Any], WorkflowState]
    preflight: Optional[Callable[[str, Any], Awaitable[None]]] = None
    summarize: Callable[[WorkflowState], Dict[str, Any]] = _dump_state


class WorkflowRegistry:
    """Container responsible for storing workflow definitions."""

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition) -> None:
        """Register a definition under its kind."""

        if definition.kind in self._definitions:
            raise ValueError(f"Workflow '{definition.kind}' is already registered.")
        self._definitions[definition.kind] = definition

    def get(self, kind: str) -> WorkflowDefinition:
        """Retrieve a registered definition by kind."""

        try:
            return self._definitions[kind]
        except KeyError as exc:
            raise NotFound(f"Workflow '{kind}' is not registered.") from exc

    def has(self, kind: str) -> bool:
        """Check whether a kind is already registered."""

        return kind in self._definitions


__all__ = ["WorkflowDefinition", "WorkflowRegistry"]
