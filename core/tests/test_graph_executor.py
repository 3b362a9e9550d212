"""
Tests for GraphExecutor scheduling, caching, failure isolation and cancellation.
"""

import asyncio

import pytest

from nodestudio.errors import ConfigValidationError, CycleError, MissingDefinitionError, NodeExecutionError
from nodestudio.graph.executor import (
    CANCELLED_MESSAGE,
    GraphExecutor,
    NodeState,
    RunStatus,
    resolve_inputs,
    timeout_for,
)
from nodestudio.graph.node import (
    CachePolicy,
    ConfigFieldSpec,
    ConfigFieldType,
    ConfigSchema,
    NodeDefinition,
    NodeResult,
    PortSpec,
    PortType,
)
from nodestudio.graph.project import Edge, Graph, NodeInstance
from nodestudio.graph.registry import NodeRegistry
from nodestudio.runtime.event_bus import RunEventBus
from nodestudio.storage.node_cache_store import NodeCacheStore


# ---- Fake node kinds ----
class CallLog:
    def __init__(self):
        self.calls = []

    def count(self, node_id):
        return sum(1 for c in self.calls if c == node_id)


def source_kind(log, kind="test.source", cache_policy=CachePolicy.BY_INPUTS):
    async def execute(config, inputs, context):
        log.calls.append(context.node_id)
        return {"out": config.get("value", context.node_id)}

    return NodeDefinition(
        kind=kind,
        version="1.0.0",
        execute=execute,
        output_ports=(PortSpec("out", PortType.ANY),),
        config_schema=ConfigSchema(fields=(ConfigFieldSpec("value", "Value", ConfigFieldType.TEXT),)),
        cache_policy=cache_policy,
    )


def join_kind(log):
    async def execute(config, inputs, context):
        log.calls.append(context.node_id)
        value = inputs.get("in")
        if isinstance(value, list):
            value = "+".join(value)
        return NodeResult(outputs={"out": f"{context.node_id}({value})"})

    return NodeDefinition(
        kind="test.join",
        version="1.0.0",
        execute=execute,
        input_ports=(PortSpec("in", PortType.ANY),),
        output_ports=(PortSpec("out", PortType.ANY),),
    )


def failing_kind(log, message="upstream exploded"):
    async def execute(config, inputs, context):
        log.calls.append(context.node_id)
        raise NodeExecutionError(message, node_id=context.node_id)

    return NodeDefinition(
        kind="test.fail",
        version="1.0.0",
        execute=execute,
        output_ports=(PortSpec("out", PortType.ANY),),
    )


def slow_kind(log, seconds=10.0):
    async def execute(config, inputs, context):
        log.calls.append(context.node_id)
        await asyncio.sleep(seconds)
        return {"out": "late"}

    return NodeDefinition(
        kind="test.slow",
        version="1.0.0",
        execute=execute,
        input_ports=(PortSpec("in", PortType.ANY),),
        output_ports=(PortSpec("out", PortType.ANY),),
    )


def node(node_id, kind="test.source", **kwargs):
    return NodeInstance(id=node_id, kind=kind, **kwargs)


def wire(edge_id, src, dst):
    return Edge(id=edge_id, from_node_id=src, from_port_id="out", to_node_id=dst, to_port_id="in")


def types_of(events):
    return [e.type for e in events]


# ---- success paths ----


@pytest.mark.asyncio
async def test_linear_chain_runs_in_dependency_order():
    log = CallLog()
    registry = NodeRegistry([source_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("c", "test.join"), node("b", "test.join"), node("a", config={"value": "x"})],
        edges=[wire("e1", "a", "b"), wire("e2", "b", "c")],
    )
    events = []

    result = await GraphExecutor(registry).execute(graph, on_event=events.append)

    assert result.status == RunStatus.SUCCESS
    assert result.success
    assert log.calls == ["a", "b", "c"]
    assert result.outputs["c"] == {"out": "c(b(x))"}
    assert result.executed_node_ids == ["a", "b", "c"]
    assert result.run_id.startswith("run_")
    assert types_of(events)[0] == "run.started"
    assert types_of(events)[-1] == "run.completed"
    assert events[-1].status == "success"
    assert "run.failed" not in types_of(events)
    # every node.output comes after that node's node.started
    for node_id in ("a", "b", "c"):
        started = next(i for i, e in enumerate(events) if e.type == "node.started" and e.node_id == node_id)
        output = next(i for i, e in enumerate(events) if e.type == "node.output" and e.node_id == node_id)
        assert started < output


@pytest.mark.asyncio
async def test_fan_in_port_receives_list_in_edge_order():
    log = CallLog()
    registry = NodeRegistry([source_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("a", config={"value": "A"}), node("b", config={"value": "B"}), node("j", "test.join")],
        edges=[wire("e1", "a", "j"), wire("e2", "b", "j")],
    )

    result = await GraphExecutor(registry).execute(graph)

    assert result.outputs["j"] == {"out": "j(A+B)"}


def test_resolve_inputs_skips_missing_upstream_outputs():
    graph = Graph(
        nodes=[node("a"), node("b"), node("j", "test.join")],
        edges=[wire("e1", "a", "j"), wire("e2", "b", "j")],
    )

    assert resolve_inputs(graph, "j", {"a": {"out": 1}, "b": {}}) == {"in": [1]}
    assert resolve_inputs(graph, "j", {}) == {}


@pytest.mark.asyncio
async def test_independent_branches_run_concurrently():
    started = {"left": asyncio.Event(), "right": asyncio.Event()}

    async def execute(config, inputs, context):
        started[context.node_id].set()
        other = "right" if context.node_id == "left" else "left"
        await asyncio.wait_for(started[other].wait(), timeout=2)
        return {"out": context.node_id}

    registry = NodeRegistry([NodeDefinition(kind="test.pair", version="1.0.0", execute=execute)])
    graph = Graph(nodes=[node("left", "test.pair"), node("right", "test.pair")])

    result = await GraphExecutor(registry).execute(graph)

    assert result.status == RunStatus.SUCCESS
    assert sorted(result.executed_node_ids) == ["left", "right"]


# ---- failure isolation ----


@pytest.mark.asyncio
async def test_failed_node_leaves_dependents_pending():
    log = CallLog()
    registry = NodeRegistry([failing_kind(log), join_kind(log), source_kind(log)])
    graph = Graph(
        nodes=[node("fetch-1", "test.fail"), node("textgen-1", "test.join"), node("other", config={"value": "ok"})],
        edges=[wire("e1", "fetch-1", "textgen-1")],
    )
    events = []

    result = await GraphExecutor(registry).execute(graph, on_event=events.append)

    assert result.status == RunStatus.FAILED
    assert result.failed_node_ids == ["fetch-1"]
    assert result.pending_node_ids == ["textgen-1"]
    assert result.node_states["textgen-1"] == NodeState.PENDING
    assert result.executed_node_ids == ["other"]
    assert "textgen-1" not in log.calls
    assert "upstream exploded" in result.error

    failed = next(e for e in events if e.type == "node.failed")
    assert failed.node_id == "fetch-1"
    assert failed.error == "upstream exploded"
    assert "NodeExecutionError" in failed.error_stack
    assert types_of(events)[-2:] == ["run.failed", "run.completed"]
    assert events[-1].status == "failed"


@pytest.mark.asyncio
async def test_continue_on_error_releases_dependents():
    log = CallLog()
    registry = NodeRegistry([failing_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("flaky", "test.fail", continue_on_error=True), node("after", "test.join")],
        edges=[wire("e1", "flaky", "after")],
    )

    result = await GraphExecutor(registry).execute(graph)

    assert result.status == RunStatus.SUCCESS
    assert result.failed_node_ids == ["flaky"]
    assert result.outputs["after"] == {"out": "after(None)"}


@pytest.mark.asyncio
async def test_disabled_node_is_skipped_and_releases_dependents():
    log = CallLog()
    registry = NodeRegistry([source_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("off", disabled=True), node("after", "test.join")],
        edges=[wire("e1", "off", "after")],
    )

    result = await GraphExecutor(registry).execute(graph)

    assert result.skipped_node_ids == ["off"]
    assert result.node_states["off"] == NodeState.SKIPPED
    assert log.calls == ["after"]


@pytest.mark.asyncio
async def test_node_returning_wrong_type_fails():
    async def execute(config, inputs, context):
        return "not a dict"

    registry = NodeRegistry([NodeDefinition(kind="test.bad", version="1.0.0", execute=execute)])
    graph = Graph(nodes=[node("bad", "test.bad")])

    result = await GraphExecutor(registry).execute(graph)

    assert result.failed_node_ids == ["bad"]
    assert "expected NodeResult or dict" in result.error


@pytest.mark.asyncio
async def test_timeout_from_config_fails_the_node():
    log = CallLog()
    registry = NodeRegistry([slow_kind(log)])
    graph = Graph(nodes=[node("slow", "test.slow", config={"timeoutMs": 50})])
    events = []

    result = await GraphExecutor(registry).execute(graph, on_event=events.append)

    assert result.failed_node_ids == ["slow"]
    failed = next(e for e in events if e.type == "node.failed")
    assert failed.error == "Node timed out after 0.05s"


@pytest.mark.asyncio
async def test_numeric_string_timeout_is_honoured():
    log = CallLog()
    registry = NodeRegistry([slow_kind(log)])
    graph = Graph(nodes=[node("slow", "test.slow", config={"timeoutMs": "50"})])
    events = []

    result = await asyncio.wait_for(GraphExecutor(registry).execute(graph, on_event=events.append), timeout=2)

    assert result.failed_node_ids == ["slow"]
    failed = next(e for e in events if e.type == "node.failed")
    assert failed.error == "Node timed out after 0.05s"


def test_timeout_for_reads_numbers_and_numeric_strings():
    definition = slow_kind(CallLog())

    assert timeout_for(definition, {"timeoutMs": 250}) == 0.25
    assert timeout_for(definition, {"timeoutMs": " 250 "}) == 0.25
    assert timeout_for(definition, {"timeoutMs": "0"}) is None
    assert timeout_for(definition, {"timeoutMs": "soon"}) is None
    assert timeout_for(definition, {"timeoutMs": True}) is None


@pytest.mark.asyncio
async def test_event_callback_errors_do_not_break_the_run():
    log = CallLog()
    registry = NodeRegistry([source_kind(log)])
    graph = Graph(nodes=[node("a")])

    def on_event(event):
        raise RuntimeError("display crashed")

    result = await GraphExecutor(registry).execute(graph, on_event=on_event)

    assert result.status == RunStatus.SUCCESS


# ---- preflight ----


@pytest.mark.asyncio
async def test_cycle_rejected_before_any_event():
    log = CallLog()
    registry = NodeRegistry([join_kind(log)])
    graph = Graph(
        nodes=[node("A", "test.join"), node("B", "test.join")],
        edges=[wire("e1", "A", "B"), wire("e2", "B", "A")],
    )
    events = []

    with pytest.raises(CycleError):
        await GraphExecutor(registry).execute(graph, on_event=events.append)

    assert events == []
    assert log.calls == []


@pytest.mark.asyncio
async def test_missing_definition_rejected_unless_disabled():
    registry = NodeRegistry()
    events = []

    with pytest.raises(MissingDefinitionError) as exc_info:
        await GraphExecutor(registry).execute(Graph(nodes=[node("ghost", "test.ghost")]), on_event=events.append)
    assert exc_info.value.missing == [("ghost", "test.ghost", "1.0.0")]
    assert events == []

    result = await GraphExecutor(registry).execute(Graph(nodes=[node("ghost", "test.ghost", disabled=True)]))
    assert result.skipped_node_ids == ["ghost"]


@pytest.mark.asyncio
async def test_invalid_config_rejected_with_every_issue():
    async def execute(config, inputs, context):
        return {}

    definition = NodeDefinition(
        kind="test.strict",
        version="1.0.0",
        execute=execute,
        config_schema=ConfigSchema(
            fields=(
                ConfigFieldSpec("command", "Command", ConfigFieldType.TEXT, required=True),
                ConfigFieldSpec("count", "Count", ConfigFieldType.NUMBER, max=3),
            )
        ),
    )
    graph = Graph(nodes=[node("x", "test.strict", config={"count": 5}), node("y", "test.strict", config={"command": "ok"})])

    with pytest.raises(ConfigValidationError) as exc_info:
        await GraphExecutor(NodeRegistry([definition])).execute(graph)

    assert list(exc_info.value.issues) == ["x"]
    assert [i.field_key for i in exc_info.value.issues["x"]] == ["command", "count"]


# ---- caching ----


@pytest.mark.asyncio
async def test_second_run_is_served_entirely_from_cache():
    log = CallLog()
    registry = NodeRegistry([source_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("a", config={"value": "x"}), node("b", "test.join")],
        edges=[wire("e1", "a", "b")],
    )
    executor = GraphExecutor(registry, cache_store=NodeCacheStore("p1"))

    first = await executor.execute(graph)
    events = []
    second = await executor.execute(graph, on_event=events.append)

    assert first.executed_node_ids == ["a", "b"]
    assert second.executed_node_ids == []
    assert second.cached_node_ids == ["a", "b"]
    assert second.outputs == first.outputs
    assert log.calls == ["a", "b"]
    assert "node.started" not in types_of(events)
    for node_id in ("a", "b"):
        node_events = [e for e in events if getattr(e, "node_id", None) == node_id]
        assert types_of(node_events) == ["node.cache_hit", "node.output"]
        assert node_events[1].source == "cache"


@pytest.mark.asyncio
async def test_config_change_invalidates_node_and_downstream():
    log = CallLog()
    registry = NodeRegistry([source_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("a", config={"value": "x"}), node("b", "test.join")],
        edges=[wire("e1", "a", "b")],
    )
    executor = GraphExecutor(registry, cache_store=NodeCacheStore("p1"))
    await executor.execute(graph)

    graph.nodes[0].config["value"] = "y"
    result = await executor.execute(graph)

    assert result.executed_node_ids == ["a", "b"]
    assert result.outputs["b"] == {"out": "b(y)"}


@pytest.mark.asyncio
async def test_forced_node_bypasses_cache():
    log = CallLog()
    registry = NodeRegistry([source_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("a", config={"value": "x"}), node("b", "test.join")],
        edges=[wire("e1", "a", "b")],
    )
    executor = GraphExecutor(registry, cache_store=NodeCacheStore("p1"))
    await executor.execute(graph)

    result = await executor.execute(graph, force_node_ids=["b"])

    assert result.cached_node_ids == ["a"]
    assert result.executed_node_ids == ["b"]


@pytest.mark.asyncio
async def test_never_cached_nodes_always_execute():
    log = CallLog()
    registry = NodeRegistry([source_kind(log, kind="test.live", cache_policy=CachePolicy.NEVER)])
    cache = NodeCacheStore("p1")
    cache.store("live", "test.live", "1.0.0", "stale", {"out": "old"}, run_id="run_old")
    graph = Graph(nodes=[node("live", "test.live")])
    executor = GraphExecutor(registry, cache_store=cache)

    await executor.execute(graph)
    await executor.execute(graph)

    assert log.count("live") == 2
    assert cache.get_entry("live") is None


@pytest.mark.asyncio
async def test_failed_node_is_not_cached():
    log = CallLog()
    registry = NodeRegistry([failing_kind(log)])
    cache = NodeCacheStore("p1")

    await GraphExecutor(registry, cache_store=cache).execute(Graph(nodes=[node("f", "test.fail")]))

    assert cache.entries == {}


# ---- cancellation ----


@pytest.mark.asyncio
async def test_cancel_stops_in_flight_nodes():
    log = CallLog()
    registry = NodeRegistry([slow_kind(log), join_kind(log)])
    graph = Graph(
        nodes=[node("slow", "test.slow"), node("after", "test.join")],
        edges=[wire("e1", "slow", "after")],
    )
    cancel = asyncio.Event()
    events = []

    def on_event(event):
        events.append(event)
        if event.type == "node.started":
            cancel.set()

    result = await asyncio.wait_for(
        GraphExecutor(registry).execute(graph, cancel_event=cancel, on_event=on_event),
        timeout=5,
    )

    assert result.status == RunStatus.CANCELLED
    assert result.error == CANCELLED_MESSAGE
    assert result.failed_node_ids == ["slow"]
    assert result.pending_node_ids == ["after"]
    failed = next(e for e in events if e.type == "node.failed")
    assert failed.error == CANCELLED_MESSAGE
    assert types_of(events)[-2:] == ["run.failed", "run.completed"]
    assert events[-1].status == "cancelled"


# ---- event bus ----


@pytest.mark.asyncio
async def test_events_are_published_to_the_bus_in_order():
    log = CallLog()
    registry = NodeRegistry([source_kind(log)])
    bus = RunEventBus()
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe("run_fixed", handler)
    await GraphExecutor(registry, event_bus=bus).execute(Graph(nodes=[node("a")]), run_id="run_fixed")

    assert types_of(received) == ["run.started", "node.started", "node.output", "run.completed"]
    assert bus.get_history("run_fixed") == received
