from __future__ import annotations

"""Graph models for the workflow engine."""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, Sequence

from engine.node import Node
from engine.state import WorkflowState


@dataclass(slots=True)
class Edge:
    """Concrete runtime edge data."""

    source: str
    target: str


@dataclass
class Graph:
    """Fixed directed graph of nodes over a typed state model.

    Every node has at most one outgoing edge; a node without one ends the
    run. Cycles are rejected so that ``step`` counters in checkpoints grow
    monotonically along the path.
    """

    id: str
    name: str
    start_node: str
    nodes: Dict[str, Node]
    state_model: type[WorkflowState]
    edges: list[Edge] = field(default_factory=list)
    adjacency: Dict[str, Edge] = field(default_factory=dict)

    def get_node(self, node_id: str) -> Node:
        """Return the node for the provided identifier."""

        try:
            return self.nodes[node_id]
        except KeyError as exc:
            raise KeyError(f"Node '{node_id}' not found in graph '{self.id}'.") from exc

    def next_node(self, node_id: str) -> str | None:
        """Return the successor of ``node_id`` or None at the end of the graph."""

        edge = self.adjacency.get(node_id)
        return edge.target if edge else None

    def ordered_nodes(self) -> list[Node]:
        """Nodes in execution order starting at ``start_node``."""

        ordered: list[Node] = []
        current: str | None = self.start_node
        while current is not None:
            ordered.append(self.nodes[current])
            current = self.next_node(current)
        return ordered

    @classmethod
    def build(
        cls,
        *,
        id: str,
        name: str,
        start_node: str,
        nodes: Iterable[Node],
        edges: Iterable[tuple[str, str]],
        state_model: type[WorkflowState],
    ) -> "Graph":
        """Validate and assemble a graph from nodes and ``(source, target)`` pairs."""

        node_map: Dict[str, Node] = {}
        for node in nodes:
            if node.id in node_map:
                raise ValueError(f"Node '{node.id}' is defined twice.")
            if node.is_suspend and node.on_resume is None:
                raise ValueError(f"Suspend node '{node.id}' needs a resume handler.")
            node_map[node.id] = node

        if start_node not in node_map:
            raise ValueError(f"Start node '{start_node}' is not defined.")

        edge_list: list[Edge] = []
        adjacency: Dict[str, Edge] = {}
        incoming: Dict[str, int] = defaultdict(int)
        for source, target in edges:
            if source not in node_map or target not in node_map:
                raise ValueError(f"Edge references unknown nodes: {source} -> {target}")
            if source in adjacency:
                raise ValueError(f"Node '{source}' has more than one outgoing edge.")
            edge = Edge(source=source, target=target)
            edge_list.append(edge)
            adjacency[source] = edge
            incoming[target] += 1

        if incoming.get(start_node):
            raise ValueError(f"Start node '{start_node}' cannot have incoming edges.")

        seen: set[str] = set()
        current: str | None = start_node
        while current is not None:
            if current in seen:
                raise ValueError(f"Graph '{id}' contains a cycle through '{current}'.")
            seen.add(current)
            edge = adjacency.get(current)
            current = edge.target if edge else None

        unreachable = sorted(set(node_map) - seen)
        if unreachable:
            raise ValueError(f"Unreachable nodes in graph '{id}': {', '.join(unreachable)}")

        return cls(
            id=id,
            name=name,
            start_node=start_node,
            nodes=node_map,
            state_model=state_model,
            edges=edge_list,
            adjacency=adjacency,
        )

    @classmethod
    def sequence(
        cls,
        *,
        id: str,
        name: str,
        nodes: Sequence[Node],
        state_model: type[WorkflowState],
    ) -> "Graph":
        """Build a linear graph that runs ``nodes`` in the given order."""

        if not nodes:
            raise ValueError(f"Graph '{id}' needs at least one node.")
        pairs = [(a.id, b.id) for a, b in zip(nodes, nodes[1:])]
        return cls.build(
            id=id,
            name=name,
            start_node=nodes[0].id,
            nodes=nodes,
            edges=pairs,
            state_model=state_model,
        )


__all__ = ["Edge", "Graph"]
