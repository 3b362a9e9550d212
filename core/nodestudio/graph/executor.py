"""
Graph Executor - runs a (scoped) graph to completion.

The executor:
1. Preflights the graph (cycles, missing definitions, invalid configs)
2. Starts every node whose upstream nodes have all settled
3. Serves cacheable nodes from the node cache when their inputs are unchanged
4. Isolates failures to the failing node and whatever depends on it
5. Reports everything as an ordered stream of run events

Independent branches run concurrently. There is no concurrency cap here;
throttling belongs to the external services that nodes call.
"""

import asyncio
import hashlib
import inspect
import logging
import traceback
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from nodestudio.config import StudioSettings
from nodestudio.errors import (
    ConfigValidationError,
    CycleError,
    MissingDefinitionError,
    NodeTimeoutError,
)
from nodestudio.graph.config_validation import merge_with_defaults, parse_number, validate
from nodestudio.graph.node import NodeContext, NodeDefinition, NodeResult
from nodestudio.graph.project import Graph, NodeInstance, utc_now
from nodestudio.graph.registry import NodeRegistry
from nodestudio.graph.scope import find_cycle
from nodestudio.observability import set_trace_context
from nodestudio.runtime.event_bus import RunEventBus
from nodestudio.runtime.run_events import (
    NodeCacheHit,
    NodeFailed,
    NodeOutput,
    NodeStarted,
    RunCompleted,
    RunEvent,
    RunFailed,
    RunStarted,
)
from nodestudio.storage.node_cache_store import NodeCacheStore, build_input_fingerprint, stable_json

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Run cancelled."

EventCallback = Callable[[RunEvent], Awaitable[None] | None]


class RunStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeState(StrEnum):
    """Per-node state within one run."""

    IDLE = "idle"
    PENDING = "pending"  # waiting, or blocked behind a failed upstream
    RUNNING = "running"
    CACHED = "cached"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # disabled node


@dataclass
class RunResult:
    """Summary of a finished run."""

    run_id: str
    status: RunStatus
    started_at: str
    finished_at: str
    executed_node_ids: list[str] = field(default_factory=list)
    cached_node_ids: list[str] = field(default_factory=list)
    skipped_node_ids: list[str] = field(default_factory=list)
    failed_node_ids: list[str] = field(default_factory=list)
    pending_node_ids: list[str] = field(default_factory=list)
    node_states: dict[str, NodeState] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def to_summary(self) -> dict[str, Any]:
        """camelCase summary as stored in the run index."""
        return {
            "runId": self.run_id,
            "status": self.status.value,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": self.error,
            "executedNodeIds": list(self.executed_node_ids),
            "cachedNodeIds": list(self.cached_node_ids),
            "skippedNodeIds": list(self.skipped_node_ids),
            "failedNodeIds": list(self.failed_node_ids),
            "pendingNodeIds": list(self.pending_node_ids),
            "warnings": list(self.warnings),
        }


@dataclass
class _RunState:
    """Mutable bookkeeping for a single run."""

    run_id: str
    graph: Graph
    definitions: dict[str, NodeDefinition]
    configs: dict[str, dict[str, Any]]
    force_node_ids: set[str]
    cancel_event: asyncio.Event
    on_event: EventCallback | None
    states: dict[str, NodeState] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    remaining_deps: dict[str, int] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)
    executed: list[str] = field(default_factory=list)
    cached: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    fatal_errors: list[str] = field(default_factory=list)
    emit_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def topological_order(graph: Graph) -> list[str]:
    """Kahn's algorithm, ties broken by node order in the graph."""
    indegree = {n.id: 0 for n in graph.nodes}
    successors: dict[str, list[str]] = {n.id: [] for n in graph.nodes}
    for edge in graph.edges:
        indegree[edge.to_node_id] += 1
        successors[edge.from_node_id].append(edge.to_node_id)
    ready = [n.id for n in graph.nodes if indegree[n.id] == 0]
    order: list[str] = []
    while ready:
        node_id = ready.pop(0)
        order.append(node_id)
        for child in successors[node_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
    if len(order) != len(graph.nodes):
        raise CycleError(find_cycle(graph) or [n for n in indegree if n not in order])
    return order


def resolve_inputs(graph: Graph, node_id: str, outputs: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """
    Collect a node's input values from its upstream outputs.

    A port fed by several edges receives a list, in edge order. Values from
    upstream nodes without outputs (failed, skipped) are absent.
    """
    incoming = graph.get_incoming_edges(node_id)
    fan_in: dict[str, int] = {}
    for edge in incoming:
        fan_in[edge.to_port_id] = fan_in.get(edge.to_port_id, 0) + 1

    inputs: dict[str, Any] = {}
    for edge in incoming:
        upstream = outputs.get(edge.from_node_id)
        if upstream is None or edge.from_port_id not in upstream:
            continue
        value = upstream[edge.from_port_id]
        if fan_in[edge.to_port_id] > 1:
            inputs.setdefault(edge.to_port_id, []).append(value)
        else:
            inputs[edge.to_port_id] = value
    return inputs


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:16]}"


def timeout_for(definition: NodeDefinition, config: dict[str, Any]) -> float | None:
    """A positive ``timeoutMs`` in the config overrides the definition's timeout."""
    timeout_ms = parse_number(config.get("timeoutMs"))
    if timeout_ms is not None and timeout_ms > 0:
        return timeout_ms / 1000
    return definition.timeout_seconds


class GraphExecutor:
    """
    Executes graphs against a node registry.

    Example:
        executor = GraphExecutor(registry=registry, cache_store=NodeCacheStore("p1"))
        result = await executor.execute(graph, on_event=print_event)
    """

    def __init__(
        self,
        registry: NodeRegistry,
        cache_store: NodeCacheStore | None = None,
        event_bus: RunEventBus | None = None,
        settings: StudioSettings | None = None,
        assets: Any = None,
        provider: Any = None,
    ):
        self.registry = registry
        self.cache_store = cache_store
        self.event_bus = event_bus
        self.settings = settings
        self.assets = assets
        self.provider = provider

    # ------------------------------------------------------------------
    # Preflight
    # ------------------------------------------------------------------

    def preflight(self, graph: Graph) -> tuple[dict[str, NodeDefinition], dict[str, dict[str, Any]]]:
        """
        Resolve definitions and validate configs for every enabled node.

        Raises CycleError, MissingDefinitionError or ConfigValidationError;
        all of them are raised before the run emits anything.
        """
        cycle = find_cycle(graph)
        if cycle is not None:
            raise CycleError(cycle)

        definitions: dict[str, NodeDefinition] = {}
        missing: list[tuple[str, str, str]] = []
        for node in graph.nodes:
            definition = self.registry.get(node.kind, node.version)
            if definition is None:
                if not node.disabled:
                    missing.append((node.id, node.kind, node.version))
                continue
            definitions[node.id] = definition
        if missing:
            raise MissingDefinitionError(missing)

        configs: dict[str, dict[str, Any]] = {}
        issues: dict[str, list[Any]] = {}
        for node in graph.nodes:
            definition = definitions.get(node.id)
            if definition is None:
                continue
            configs[node.id] = merge_with_defaults(definition, node.config)
            if node.disabled:
                continue
            result = validate(definition, node.config)
            if not result.is_valid:
                issues[node.id] = result.errors
        if issues:
            raise ConfigValidationError(issues)

        return definitions, configs

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(
        self,
        graph: Graph,
        run_id: str | None = None,
        force_node_ids: list[str] | set[str] | None = None,
        cancel_event: asyncio.Event | None = None,
        on_event: EventCallback | None = None,
    ) -> RunResult:
        """
        Run ``graph`` to completion.

        Args:
            graph: The graph to execute, usually the output of ``scope_for_run``
            run_id: Run identifier (generated when omitted)
            force_node_ids: Nodes that must execute even on a cache hit
            cancel_event: Set it to cancel the run
            on_event: Called with every event, in order, before the next one is produced

        Returns:
            RunResult with status success, failed or cancelled
        """
        definitions, configs = self.preflight(graph)
        order = topological_order(graph)

        run_id = run_id or new_run_id()
        run = _RunState(
            run_id=run_id,
            graph=graph,
            definitions=definitions,
            configs=configs,
            force_node_ids=set(force_node_ids or ()),
            cancel_event=cancel_event or asyncio.Event(),
            on_event=on_event,
        )
        for node in graph.nodes:
            run.states[node.id] = NodeState.PENDING
            run.remaining_deps[node.id] = len({e.from_node_id for e in graph.get_incoming_edges(node.id)})
            for upstream_id in {e.from_node_id for e in graph.get_incoming_edges(node.id)}:
                run.dependents.setdefault(upstream_id, []).append(node.id)

        set_trace_context(run_id=run_id)
        started_at = utc_now()
        snapshot_hash = hashlib.sha256(stable_json(graph.model_dump(mode="json", by_alias=True)).encode()).hexdigest()
        logger.info(f"Run {run_id} started with {len(graph.nodes)} nodes")
        await self._emit(run, RunStarted(run_id=run_id, snapshot_hash=snapshot_hash))

        cancelled = await self._schedule(run, order)

        if cancelled:
            status = RunStatus.CANCELLED
            error: str | None = CANCELLED_MESSAGE
        elif run.fatal_errors:
            status = RunStatus.FAILED
            error = run.fatal_errors[0]
        else:
            status = RunStatus.SUCCESS
            error = None

        if error is not None:
            await self._emit(run, RunFailed(run_id=run_id, error=error))
        await self._emit(run, RunCompleted(run_id=run_id, status=status.value))

        pending = [node_id for node_id in order if run.states[node_id] == NodeState.PENDING]
        logger.info(
            f"Run {run_id} finished: {status} "
            f"(executed={len(run.executed)}, cached={len(run.cached)}, "
            f"failed={len(run.failed)}, pending={len(pending)})"
        )
        return RunResult(
            run_id=run_id,
            status=status,
            started_at=started_at,
            finished_at=utc_now(),
            executed_node_ids=run.executed,
            cached_node_ids=run.cached,
            skipped_node_ids=run.skipped,
            failed_node_ids=run.failed,
            pending_node_ids=pending,
            node_states=dict(run.states),
            outputs=run.outputs,
            error=error,
        )

    async def _schedule(self, run: _RunState, order: list[str]) -> bool:
        """Drive the run until nothing more can start. Returns True when cancelled."""
        running: dict[asyncio.Task, str] = {}
        cancel_waiter = asyncio.ensure_future(run.cancel_event.wait())
        try:
            while not run.cancel_event.is_set():
                for node_id in order:
                    if run.states[node_id] != NodeState.PENDING or run.remaining_deps[node_id] > 0:
                        continue
                    node = run.graph.require_node(node_id)
                    if node.disabled:
                        # order is topological, so released dependents are reached later in this pass
                        run.states[node_id] = NodeState.SKIPPED
                        run.skipped.append(node_id)
                        logger.debug(f"Skipping disabled node {node_id}")
                        self._release_dependents(run, node_id)
                        continue
                    run.states[node_id] = NodeState.RUNNING
                    task = asyncio.create_task(self._run_node(run, node), name=f"node:{node_id}")
                    running[task] = node_id

                if not running:
                    break

                done, _ = await asyncio.wait(
                    [*running.keys(), cancel_waiter],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is cancel_waiter:
                        continue
                    node_id = running.pop(task)
                    if task.cancelled():
                        # the node itself raised CancelledError without the run being cancelled
                        await self._fail_node(run, run.graph.require_node(node_id), CANCELLED_MESSAGE, None)
                        continue
                    # _run_node handles node errors itself; anything here is a bug
                    task.result()

            if not run.cancel_event.is_set():
                return False

            logger.info(f"Run {run.run_id} cancelled with {len(running)} node(s) in flight")
            for task in running:
                task.cancel()
            await asyncio.gather(*running.keys(), return_exceptions=True)
            for node_id in running.values():
                if run.states[node_id] == NodeState.RUNNING:
                    run.states[node_id] = NodeState.FAILED
                    run.failed.append(node_id)
                    await self._emit(run, NodeFailed(run_id=run.run_id, node_id=node_id, error=CANCELLED_MESSAGE))
            return True
        finally:
            cancel_waiter.cancel()

    async def _run_node(self, run: _RunState, node: NodeInstance) -> None:
        set_trace_context(node_id=node.id)
        definition = run.definitions[node.id]
        config = run.configs[node.id]
        inputs = resolve_inputs(run.graph, node.id, run.outputs)

        fingerprint = None
        if self.cache_store is not None and definition.cacheable:
            fingerprint = build_input_fingerprint(node.kind, node.version, config, inputs)
            if node.id not in run.force_node_ids:
                entry = self.cache_store.lookup(node.id, node.kind, node.version, fingerprint)
                if entry is not None:
                    run.outputs[node.id] = entry.outputs
                    run.states[node.id] = NodeState.CACHED
                    run.cached.append(node.id)
                    logger.debug(f"Cache hit for {node.id} ({node.kind})")
                    await self._emit(run, NodeCacheHit(run_id=run.run_id, node_id=node.id))
                    await self._emit(
                        run,
                        NodeOutput(run_id=run.run_id, node_id=node.id, outputs=entry.outputs, source="cache"),
                    )
                    self._release_dependents(run, node.id)
                    return

        await self._emit(run, NodeStarted(run_id=run.run_id, node_id=node.id))
        context = NodeContext(
            run_id=run.run_id,
            node_id=node.id,
            node_title=node.title,
            cancel_event=run.cancel_event,
            settings=self.settings,
            assets=self.assets,
            provider=self.provider,
        )

        try:
            result = await self._invoke(definition, config, inputs, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail_node(run, node, str(e) or type(e).__name__, "".join(traceback.format_exception(e)))
            return

        run.outputs[node.id] = result.outputs
        run.states[node.id] = NodeState.SUCCEEDED
        run.executed.append(node.id)
        if self.cache_store is not None:
            if definition.cacheable and fingerprint is not None:
                self.cache_store.store(
                    node.id,
                    node.kind,
                    node.version,
                    fingerprint,
                    result.outputs,
                    run_id=run.run_id,
                    artifacts=result.artifacts,
                )
            else:
                self.cache_store.remove(node.id)
        await self._emit(run, NodeOutput(run_id=run.run_id, node_id=node.id, outputs=result.outputs))
        self._release_dependents(run, node.id)

    async def _invoke(
        self,
        definition: NodeDefinition,
        config: dict[str, Any],
        inputs: dict[str, Any],
        context: NodeContext,
    ) -> NodeResult:
        timeout = timeout_for(definition, config)
        try:
            raw = await asyncio.wait_for(definition.execute(config, inputs, context), timeout)
        except TimeoutError as e:
            if timeout is None:
                raise
            raise NodeTimeoutError(context.node_id, timeout) from e
        if isinstance(raw, NodeResult):
            return raw
        if isinstance(raw, dict):
            return NodeResult(outputs=raw)
        raise TypeError(f"{definition.kind} returned {type(raw).__name__}, expected NodeResult or dict")

    async def _fail_node(self, run: _RunState, node: NodeInstance, message: str, stack: str | None) -> None:
        """
        Record a node failure. With ``continue_on_error`` dependents still run
        and see this node's outputs as absent; otherwise they stay pending.
        """
        run.states[node.id] = NodeState.FAILED
        run.failed.append(node.id)
        logger.warning(f"Node {node.id} ({node.kind}) failed: {message}")
        await self._emit(run, NodeFailed(run_id=run.run_id, node_id=node.id, error=message, error_stack=stack))
        if node.continue_on_error:
            run.outputs[node.id] = {}
            self._release_dependents(run, node.id)
        else:
            run.fatal_errors.append(f"Node {node.id} failed: {message}")

    def _release_dependents(self, run: _RunState, node_id: str) -> None:
        for dependent in run.dependents.get(node_id, []):
            run.remaining_deps[dependent] = max(0, run.remaining_deps[dependent] - 1)

    async def _emit(self, run: _RunState, event: RunEvent) -> None:
        async with run.emit_lock:
            if self.event_bus is not None:
                await self.event_bus.publish(event)
            if run.on_event is not None:
                try:
                    maybe = run.on_event(event)
                    if inspect.isawaitable(maybe):
                        await maybe
                except Exception as e:
                    logger.error(f"Event callback error for {event.type}: {e}")
