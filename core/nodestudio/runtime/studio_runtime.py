"""
Studio Runtime - runs an open project and keeps its sidecar data current.

One runtime serves one project session. Runs are queued: a second request
waits until the active run has finished. For each run the runtime

1. snapshots the live project and scopes it (whole graph or "run from node")
2. executes the scoped graph with the project's node cache
3. mirrors generation outputs back into the live project as they arrive
4. saves the cache, records the run history and flushes the project
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nodestudio.config import StudioSettings
from nodestudio.graph.executor import EventCallback, GraphExecutor, RunResult, new_run_id
from nodestudio.graph.ids import IdFactory
from nodestudio.graph.managed_outputs import (
    MaterializeResult,
    extract_artifact_paths,
    materialize_image_outputs,
    materialize_text_outputs,
)
from nodestudio.graph.project import Graph
from nodestudio.graph.registry import NodeRegistry
from nodestudio.graph.scope import scope_for_run
from nodestudio.observability import set_trace_context
from nodestudio.providers.generation import GenerationProvider
from nodestudio.runtime.event_bus import RunEventBus
from nodestudio.runtime.project_session import ProjectSession
from nodestudio.runtime.run_events import NodeOutput, RunEvent
from nodestudio.storage.asset_store import AssetStore
from nodestudio.storage.node_cache_store import CacheEntry, NodeCacheStore
from nodestudio.storage.project_store import ProjectStore
from nodestudio.storage.run_store import RunStore

logger = logging.getLogger(__name__)

Reconciler = Callable[[Graph, str, dict[str, Any], IdFactory], MaterializeResult]

# Node kinds whose outputs are mirrored into the graph, and how
RECONCILERS: dict[str, Reconciler] = {
    "studio.image_generation": materialize_image_outputs,
    "studio.text_generation": materialize_text_outputs,
}


@dataclass
class RunOptions:
    """
    Per-run options. Pass ``run_id`` to subscribe to the event bus before the
    run publishes ``run.started``.
    """

    run_id: str | None = None
    force_node_ids: list[str] = field(default_factory=list)
    cancel_event: asyncio.Event | None = None
    on_event: EventCallback | None = None


class StudioRuntime:
    """
    Example:
        runtime = await StudioRuntime.open("demo.studio.json", registry)
        result = await runtime.run_project_from_node("textgen-1")
        await runtime.close()
    """

    def __init__(
        self,
        session: ProjectSession,
        registry: NodeRegistry,
        provider: GenerationProvider | None = None,
        settings: StudioSettings | None = None,
        event_bus: RunEventBus | None = None,
        ids: IdFactory | None = None,
    ):
        self.session = session
        self.registry = registry
        self.provider = provider
        self.settings = settings or StudioSettings()
        self.event_bus = event_bus
        self.ids = ids or IdFactory()
        self.cache_store = NodeCacheStore.for_project(session.path, session.project.project_id)
        self.run_store = RunStore.for_project(session.path)
        self.assets = AssetStore.for_project(session.path)
        self._run_lock = asyncio.Lock()
        self._cache_loaded = False

    @classmethod
    async def open(
        cls,
        path: Path,
        registry: NodeRegistry,
        provider: GenerationProvider | None = None,
        settings: StudioSettings | None = None,
        event_bus: RunEventBus | None = None,
    ) -> "StudioRuntime":
        settings = settings or StudioSettings()
        session = await ProjectSession.open(path, ProjectStore(), save_debounce_ms=settings.save_debounce_ms)
        return cls(session, registry, provider=provider, settings=settings, event_bus=event_bus)

    async def close(self) -> None:
        async with self._run_lock:
            await self.session.close()

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    async def cached_entries(self) -> dict[str, CacheEntry]:
        """Cache entries for nodes that still exist, for pre-seeding display state."""
        await self._ensure_cache_loaded()
        live = self.session.project.graph.node_ids()
        return {node_id: entry for node_id, entry in self.cache_store.entries.items() if node_id in live}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_project(self, options: RunOptions | None = None) -> RunResult:
        return await self._run(None, options or RunOptions())

    async def run_project_from_node(self, node_id: str, options: RunOptions | None = None) -> RunResult:
        return await self._run([node_id], options or RunOptions())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_cache_loaded(self) -> None:
        if not self._cache_loaded:
            await self.cache_store.load()
            self._cache_loaded = True

    async def _run(self, start_node_ids: list[str] | None, options: RunOptions) -> RunResult:
        async with self._run_lock:
            snapshot = await self.session.snapshot()
            set_trace_context(project_id=snapshot.project_id)
            scoped = scope_for_run(snapshot.graph, start_node_ids)
            await self._ensure_cache_loaded()

            events: list[RunEvent] = []
            reconcile_errors: list[str] = []

            async def on_event(event: RunEvent) -> None:
                events.append(event)
                if isinstance(event, NodeOutput):
                    await self._reconcile(scoped, event, reconcile_errors)
                if options.on_event is not None:
                    maybe = options.on_event(event)
                    if inspect.isawaitable(maybe):
                        await maybe

            executor = GraphExecutor(
                registry=self.registry,
                cache_store=self.cache_store,
                event_bus=self.event_bus,
                settings=self.settings,
                assets=self.assets,
                provider=self.provider,
            )
            try:
                result = await executor.execute(
                    scoped,
                    run_id=options.run_id or new_run_id(),
                    force_node_ids=options.force_node_ids,
                    cancel_event=options.cancel_event,
                    on_event=on_event,
                )
            finally:
                await self._persist_cache()
                await self.session.flush()

            result.warnings.extend(reconcile_errors)
            await self._record_run(result, events)
            return result

    async def _reconcile(self, scoped: Graph, event: NodeOutput, errors: list[str]) -> None:
        """Mirror one node's outputs into the live project. Failures are isolated and logged."""
        node = scoped.get_node(event.node_id)
        if node is None or node.kind not in RECONCILERS:
            return
        reconciler = RECONCILERS[node.kind]
        try:
            async with self.session.edit(track=False) as project:
                if project.graph.get_node(event.node_id) is None:
                    logger.info(f"Skipping reconciliation for {event.node_id}: node was removed during the run")
                    return
                outcome = reconciler(project.graph, event.node_id, event.outputs, self.ids)
                if outcome.changed:
                    self.session.mark_dirty()
        except Exception as e:
            paths = extract_artifact_paths(event.outputs) or [str(event.outputs.get("text", ""))[:80]]
            logger.exception(
                f"Reconciling outputs of {event.node_id} failed",
                extra={"node_id": event.node_id, "artifact_paths": paths},
            )
            errors.append(f"Reconciling outputs of {event.node_id} failed: {e} (artifacts: {', '.join(paths)})")

    async def _persist_cache(self) -> None:
        self.cache_store.prune(self.session.project.graph.node_ids())
        try:
            await self.cache_store.save()
        except OSError as e:
            logger.warning(f"Failed to persist node cache for {self.session.path}: {e}")

    async def _record_run(self, result: RunResult, events: list[RunEvent]) -> None:
        max_runs = self.session.project.settings.retention.max_runs
        if max_runs is None:
            max_runs = self.settings.max_runs
        try:
            await self.run_store.write_events(result.run_id, events)
            await self.run_store.record_run(result.to_summary(), max_runs)
        except OSError as e:
            logger.warning(f"Failed to record run {result.run_id}: {e}")
            result.warnings.append(f"Run history not saved: {e}")
