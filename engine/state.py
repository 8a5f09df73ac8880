from __future__ import annotations

"""Typed workflow state and the per-field merge table used between nodes."""

from typing import Any, Callable, ClassVar, Dict, Mapping

from pydantic import BaseModel, ConfigDict

Reducer = Callable[[Any, Any], Any]
"""Merge function ``(current, update) -> merged`` for a single state field."""

StatePatch = Dict[str, Any]
"""Partial state returned by a node."""


def replace(current: Any, update: Any) -> Any:
    """Last write wins."""

    return update


def replace_list(current: Any, update: Any) -> list[Any]:
    """Replace a list field wholesale; anything that is not a list clears it."""

    return list(update) if isinstance(update, list) else []


def append(current: Any, update: Any) -> list[Any]:
    """Concatenate onto the existing list."""

    items = update if isinstance(update, list) else [update]
    return [*(current or []), *items]


class WorkflowState(BaseModel):
    """Base class for the state record a workflow graph operates on.

    Subclasses declare their fields as usual and list any non-default merge
    behaviour in ``reducers``. Fields not listed there are replaced.
    """

    model_config = ConfigDict(extra="forbid")

    reducers: ClassVar[Dict[str, Reducer]] = {}

    @classmethod
    def reducer_for(cls, field_name: str) -> Reducer:
        return cls.reducers.get(field_name, replace)

    def apply(self, patch: Mapping[str, Any] | None) -> "WorkflowState":
        """Return a new state with ``patch`` merged in through the reducer table."""

        if not patch:
            return self
        fields = type(self).model_fields
        unknown = sorted(set(patch) - set(fields))
        if unknown:
            raise ValueError(
                f"{type(self).__name__} has no field(s) {', '.join(unknown)}"
            )

        merged = self.model_dump()
        for name, value in patch.items():
            merged[name] = self.reducer_for(name)(merged.get(name), value)
        return type(self).model_validate(merged)

    def to_blob(self) -> Dict[str, Any]:
        """Serialize into the JSON form stored in checkpoints."""

        return self.model_dump(mode="json")


__all__ = [
    "Reducer",
    "StatePatch",
    "WorkflowState",
    "append",
    "replace",
    "replace_list",
]
