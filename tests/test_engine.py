from __future__ import annotations

"""Unit tests for core engine components."""

import threading
from typing import Any, List, Optional

import pytest

from engine.checkpoint import InMemoryCheckpointStore
from engine.errors import InvalidDecision, NotFound, NotSuspended
from engine.executor import Completed, ExecutionLog, Executor, Failed, Suspended
from engine.graph import Graph
from engine.node import build_node, build_suspend_node
from engine.registry import WorkflowDefinition, WorkflowRegistry
from engine.state import WorkflowState, append, replace_list


class CounterState(WorkflowState):
    count: int = 0
    items: List[str] = []
    history: List[str] = []
    approved: Optional[bool] = None

    reducers = {"items": replace_list, "history": append}


class Calls:
    """Counts node invocations so tests can assert nothing re-ran."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}

    def hit(self, name: str) -> None:
        self.counts[name] = self.counts.get(name, 0) + 1


def build_linear_graph(calls: Calls, *, fail_at: str | None = None) -> Graph:
    async def first(state: CounterState) -> dict:
        calls.hit("first")
        return {"count": state.count + 1, "items": ["a", "b"], "history": "first"}

    def second(state: CounterState) -> dict:
        calls.hit("second")
        if fail_at == "second":
            raise RuntimeError("boom")
        return {"count": state.count + 10, "items": ["c"], "history": "second"}

    return Graph.sequence(
        id="linear",
        name="Linear",
        nodes=[build_node("first", func=first), build_node("second", func=second)],
        state_model=CounterState,
    )


def build_approval_graph(calls: Calls) -> Graph:
    async def prepare(state: CounterState) -> dict:
        calls.hit("prepare")
        return {"count": 1}

    def ask(state: CounterState) -> dict:
        calls.hit("ask")
        return {"question": "approve?", "count": state.count}

    def on_decision(state: CounterState, decision: Any) -> dict:
        if decision not in ("yes", "no"):
            raise InvalidDecision(f"unexpected decision {decision!r}")
        return {"approved": decision == "yes"}

    async def finish(state: CounterState) -> dict:
        calls.hit("finish")
        return {"history": "approved" if state.approved else "rejected"}

    return Graph.sequence(
        id="approval",
        name="Approval",
        nodes=[
            build_node("prepare", func=prepare),
            build_suspend_node("ask", emit=ask, on_resume=on_decision),
            build_node("finish", func=finish),
        ],
        state_model=CounterState,
    )


# State and graph ------------------------------------------------------------------


def test_reducers_merge_per_field() -> None:
    state = CounterState(count=1, items=["x"], history=["start"])
    merged = state.apply({"count": 5, "items": ["y", "z"], "history": ["next"]})
    assert merged.count == 5
    assert merged.items == ["y", "z"]
    assert merged.history == ["start", "next"]
    assert state.items == ["x"]


def test_replace_list_clears_on_non_list() -> None:
    state = CounterState(items=["x"])
    assert state.apply({"items": None}).items == []


def test_apply_rejects_unknown_fields() -> None:
    with pytest.raises(ValueError):
        CounterState().apply({"missing": 1})


def test_graph_sequence_orders_nodes() -> None:
    graph = build_approval_graph(Calls())
    assert graph.start_node == "prepare"
    assert [node.id for node in graph.ordered_nodes()] == ["prepare", "ask", "finish"]
    assert graph.next_node("finish") is None


def test_graph_rejects_cycles() -> None:
    nodes = [build_node("a", func=lambda s: {}), build_node("b", func=lambda s: {})]
    with pytest.raises(ValueError):
        Graph.build(
            id="cyclic",
            name="Cyclic",
            start_node="a",
            nodes=nodes,
            edges=[("a", "b"), ("b", "a")],
            state_model=CounterState,
        )


def test_graph_rejects_unreachable_nodes() -> None:
    nodes = [build_node("a", func=lambda s: {}), build_node("orphan", func=lambda s: {})]
    with pytest.raises(ValueError):
        Graph.build(id="g", name="G", start_node="a", nodes=nodes, edges=[], state_model=CounterState)


def test_registry_rejects_duplicates_and_unknown_kinds() -> None:
    graph = build_linear_graph(Calls())
    definition = WorkflowDefinition(
        kind="LINEAR",
        graph=graph,
        input_model=CounterState,
        decision_model=CounterState,
        initial_state=lambda run_id, company_id, inputs: CounterState(),
    )
    registry = WorkflowRegistry()
    registry.register(definition)
    assert registry.has("LINEAR")
    with pytest.raises(ValueError):
        registry.register(definition)
    with pytest.raises(NotFound):
        registry.get("OTHER")


# Executor ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_executor_runs_sequential_graph() -> None:
    calls = Calls()
    store = InMemoryCheckpointStore()
    entries: list[ExecutionLog] = []
    executor = Executor(store, log_hook=entries.append)

    outcome = await executor.invoke(build_linear_graph(calls), "t-1", {"count": 0})

    assert isinstance(outcome, Completed)
    assert outcome.state.count == 11
    assert outcome.state.items == ["c"]
    assert outcome.state.history == ["first", "second"]
    assert [e.node_id for e in entries] == ["first", "second"]
    assert all(e.status == "success" for e in entries)

    history = await executor.history("t-1")
    assert [item.checkpoint.metadata.source for item in history] == ["loop", "loop", "input"]
    assert history[0].checkpoint.metadata.next is None


@pytest.mark.asyncio
async def test_sync_nodes_run_off_the_event_loop() -> None:
    seen: list[str] = []

    def record_thread(state: CounterState) -> dict:
        seen.append(threading.current_thread().name)
        return {}

    graph = Graph.sequence(
        id="sync",
        name="Sync",
        nodes=[build_node("only", func=record_thread)],
        state_model=CounterState,
    )
    outcome = await Executor(InMemoryCheckpointStore()).invoke(graph, "t-sync", CounterState())

    assert isinstance(outcome, Completed)
    assert seen and seen[0] != threading.main_thread().name


@pytest.mark.asyncio
async def test_failure_keeps_last_good_checkpoint() -> None:
    calls = Calls()
    executor = Executor(InMemoryCheckpointStore())

    outcome = await executor.invoke(build_linear_graph(calls, fail_at="second"), "t-fail", {})

    assert isinstance(outcome, Failed)
    assert outcome.node_id == "second"
    assert outcome.message == "boom"
    assert outcome.logs[-1].status == "failed"

    snapshot = await executor.get_state(build_linear_graph(calls), "t-fail")
    assert snapshot is not None
    assert snapshot.metadata.node == "first"
    assert snapshot.next_node == "second"
    assert snapshot.state.count == 1


@pytest.mark.asyncio
async def test_invoke_continues_a_failed_thread_without_rerunning_done_nodes() -> None:
    calls = Calls()
    executor = Executor(InMemoryCheckpointStore())
    await executor.invoke(build_linear_graph(calls, fail_at="second"), "t-retry", {})

    outcome = await executor.invoke(build_linear_graph(calls), "t-retry", {"count": 100})

    assert isinstance(outcome, Completed)
    assert outcome.state.count == 11
    assert calls.counts == {"first": 1, "second": 2}


@pytest.mark.asyncio
async def test_suspend_then_resume_completes_without_rerunning_prefix() -> None:
    calls = Calls()
    store = InMemoryCheckpointStore()
    graph = build_approval_graph(calls)

    suspended = await Executor(store).invoke(graph, "t-approve", CounterState())
    assert isinstance(suspended, Suspended)
    assert suspended.node_id == "ask"
    assert suspended.payload == {"question": "approve?", "count": 1}

    # A fresh executor stands in for a restarted process.
    resumed = await Executor(store).resume(graph, "t-approve", "yes")

    assert isinstance(resumed, Completed)
    assert resumed.state.approved is True
    assert resumed.state.history == ["approved"]
    assert calls.counts == {"prepare": 1, "ask": 1, "finish": 1}
    assert [log.status for log in resumed.logs] == ["resumed", "success"]


@pytest.mark.asyncio
async def test_invoke_on_suspended_thread_returns_same_interrupt() -> None:
    calls = Calls()
    executor = Executor(InMemoryCheckpointStore())
    graph = build_approval_graph(calls)
    first = await executor.invoke(graph, "t-again", CounterState())

    again = await executor.invoke(graph, "t-again", CounterState())

    assert isinstance(again, Suspended)
    assert again.checkpoint_id == first.checkpoint_id
    assert again.payload == first.payload
    assert calls.counts["ask"] == 1


@pytest.mark.asyncio
async def test_resume_errors_write_nothing() -> None:
    calls = Calls()
    executor = Executor(InMemoryCheckpointStore())
    graph = build_approval_graph(calls)

    with pytest.raises(NotFound):
        await executor.resume(graph, "t-missing", "yes")

    await executor.invoke(graph, "t-bad", CounterState())
    before = await executor.history("t-bad")
    with pytest.raises(InvalidDecision):
        await executor.resume(graph, "t-bad", "maybe")
    assert len(await executor.history("t-bad")) == len(before)

    await executor.resume(graph, "t-bad", "no")
    with pytest.raises(NotSuspended):
        await executor.resume(graph, "t-bad", "yes")


@pytest.mark.asyncio
async def test_pending_writes_are_replayed_instead_of_rerunning_node() -> None:
    calls = Calls()
    store = InMemoryCheckpointStore()
    graph = build_linear_graph(calls)
    executor = Executor(store)
    await executor.invoke(build_linear_graph(calls, fail_at="second"), "t-replay", {})

    # Simulate a crash after ``second`` produced its writes but before the checkpoint.
    latest = await store.get_latest("t-replay")
    assert latest is not None
    await store.put_writes(
        "t-replay", "", latest.checkpoint.checkpoint_id, "second", [("count", 42), ("history", "second")]
    )

    outcome = await executor.invoke(graph, "t-replay", {})

    assert isinstance(outcome, Completed)
    assert outcome.state.count == 42
    assert calls.counts["second"] == 1
    assert outcome.logs[0].status == "replayed"


@pytest.mark.asyncio
async def test_checkpoint_history_is_a_single_parent_chain() -> None:
    executor = Executor(InMemoryCheckpointStore())
    graph = build_approval_graph(Calls())
    await executor.invoke(graph, "t-chain", CounterState())
    await executor.resume(graph, "t-chain", "yes")

    history = await executor.history("t-chain")
    ids = [item.checkpoint.checkpoint_id for item in history]
    parents = [item.parent_checkpoint_id for item in history]

    assert parents[:-1] == ids[1:]
    assert parents[-1] is None
    assert sum(1 for p in parents if p is None) == 1
    assert [item.checkpoint.metadata.source for item in history] == [
        "loop",
        "resume",
        "interrupt",
        "loop",
        "input",
    ]


@pytest.mark.asyncio
async def test_get_state_by_checkpoint_id_time_travels() -> None:
    executor = Executor(InMemoryCheckpointStore())
    graph = build_linear_graph(Calls())
    await executor.invoke(graph, "t-travel", {})
    oldest = (await executor.history("t-travel"))[-1]

    snapshot = await executor.get_state(graph, "t-travel", checkpoint_id=oldest.checkpoint.checkpoint_id)

    assert snapshot is not None
    assert snapshot.state.count == 0
    assert snapshot.next_node == "first"
    assert snapshot.parent_checkpoint_id is None
