"""
End-to-end tests for StudioRuntime: project file in, runs, cache and history out.
"""

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from nodestudio.config import StudioSettings
from nodestudio.errors import CycleError
from nodestudio.graph.executor import RunStatus
from nodestudio.graph.managed_outputs import IMAGE_OUTPUT_OWNER, MANAGED_BY_KEY, TEXT_OUTPUT_OWNER
from nodestudio.graph.project import Edge, Graph, NodeInstance, Project
from nodestudio.nodes import create_default_registry, http_request
from nodestudio.providers.generation import (
    CreatedJob,
    DownloadedArtifact,
    GenerationJob,
    GenerationJobOutput,
    GenerationProvider,
)
from nodestudio.runtime import studio_runtime
from nodestudio.runtime.event_bus import RunEventBus, RunEventChannel
from nodestudio.runtime.studio_runtime import RunOptions, StudioRuntime
from nodestudio.storage.project_store import ProjectStore
from nodestudio.storage.run_store import RunStore


# ---- Fake provider ----
class FakeProvider(GenerationProvider):
    def __init__(self, text="A short summary.", images=2):
        self.text = text
        self.images = images
        self.jobs = 0

    async def create_job(self, request, idempotency_key):
        self.jobs += 1
        if request.kind == "text":
            outputs = [GenerationJobOutput(text=self.text)]
        else:
            outputs = [
                GenerationJobOutput(index=i, url=f"https://cdn.test/{i}.png", mime_type="image/png")
                for i in range(self.images)
            ]
        return CreatedJob(job=GenerationJob(id=f"job_{self.jobs}", status="succeeded", outputs=outputs))

    async def wait_for_job(
        self, job_id, poll_interval_ms, max_poll_interval_ms, max_wait_ms, signal=None, on_update=None
    ):
        raise AssertionError("jobs finish immediately")

    async def download_artifact(self, url):
        return DownloadedArtifact(data=url.encode(), content_type="image/png")


def settings() -> StudioSettings:
    return StudioSettings(save_debounce_ms=10_000, max_runs=100)


def link(edge_id, src, src_port, dst, dst_port):
    return Edge(id=edge_id, from_node_id=src, from_port_id=src_port, to_node_id=dst, to_port_id=dst_port)


async def write_project(path: Path, nodes, edges=(), max_runs=None) -> Path:
    project = Project(project_id="proj_rt", name="Runtime test", graph=Graph(nodes=list(nodes), edges=list(edges)))
    project.settings.retention.max_runs = max_runs
    await ProjectStore().save_project(path, project)
    return path


def prompt_chain():
    return [
        NodeInstance(id="text-1", kind="studio.text", config={"value": "A long article about cats."}),
        NodeInstance(id="tpl-1", kind="studio.prompt_template", config={"template": "Summarize."}),
    ], [link("e1", "text-1", "text", "tpl-1", "text")]


async def open_runtime(path: Path, provider=None) -> StudioRuntime:
    return await StudioRuntime.open(path, create_default_registry(), provider=provider, settings=settings())


@pytest.fixture
def project_path(tmp_path: Path) -> Path:
    return tmp_path / "demo.studio.json"


# ---- runs, cache and history ----


@pytest.mark.asyncio
async def test_second_run_is_all_cache_hits(project_path: Path):
    nodes, edges = prompt_chain()
    await write_project(project_path, nodes, edges)
    runtime = await open_runtime(project_path)

    first = await runtime.run_project()
    events = []
    second = await runtime.run_project(RunOptions(on_event=events.append))
    await runtime.close()

    assert first.executed_node_ids == ["text-1", "tpl-1"]
    assert second.executed_node_ids == []
    assert second.cached_node_ids == ["text-1", "tpl-1"]
    assert [e.type for e in events].count("node.cache_hit") == 2
    cache = json.loads((project_path.parent / "demo.studio.cache.json").read_text())
    assert set(cache["entries"]) == {"text-1", "tpl-1"}


@pytest.mark.asyncio
async def test_cache_survives_reopening_the_project(project_path: Path):
    nodes, edges = prompt_chain()
    await write_project(project_path, nodes, edges)
    runtime = await open_runtime(project_path)
    await runtime.run_project()
    await runtime.close()

    reopened = await open_runtime(project_path)
    result = await reopened.run_project()

    assert result.cached_node_ids == ["text-1", "tpl-1"]
    assert set(await reopened.cached_entries()) == {"text-1", "tpl-1"}


@pytest.mark.asyncio
async def test_runs_are_recorded_with_events(project_path: Path):
    nodes, edges = prompt_chain()
    await write_project(project_path, nodes, edges)
    runtime = await open_runtime(project_path)

    result = await runtime.run_project()

    store = RunStore.for_project(project_path)
    runs = await store.list_runs()
    assert runs[0]["runId"] == result.run_id
    assert runs[0]["status"] == "success"
    events = await store.read_events(result.run_id)
    assert events[0].type == "run.started"
    assert events[-1].type == "run.completed"


@pytest.mark.asyncio
async def test_run_history_respects_project_retention(project_path: Path):
    nodes, edges = prompt_chain()
    await write_project(project_path, nodes, edges, max_runs=2)
    runtime = await open_runtime(project_path)

    results = [await runtime.run_project() for _ in range(3)]

    runs = await RunStore.for_project(project_path).list_runs()
    assert [r["runId"] for r in runs] == [results[2].run_id, results[1].run_id]


@pytest.mark.asyncio
async def test_global_run_limit_applies_without_project_retention(project_path: Path):
    nodes, edges = prompt_chain()
    await write_project(project_path, nodes, edges)
    runtime = await StudioRuntime.open(
        project_path, create_default_registry(), settings=StudioSettings(save_debounce_ms=10_000, max_runs=1)
    )

    results = [await runtime.run_project() for _ in range(2)]

    runs = await RunStore.for_project(project_path).list_runs()
    assert [r["runId"] for r in runs] == [results[1].run_id]


@pytest.mark.asyncio
async def test_run_from_node_executes_only_its_ancestors(project_path: Path):
    nodes, edges = prompt_chain()
    nodes.append(NodeInstance(id="side", kind="studio.text", config={"value": "unrelated"}))
    await write_project(project_path, nodes, edges)
    runtime = await open_runtime(project_path)

    result = await runtime.run_project_from_node("text-1", RunOptions(force_node_ids=["text-1"]))

    assert result.executed_node_ids == ["text-1"]
    assert set(result.node_states) == {"text-1"}


@pytest.mark.asyncio
async def test_cycle_is_rejected_and_not_recorded(project_path: Path):
    nodes = [NodeInstance(id="A", kind="studio.text"), NodeInstance(id="B", kind="studio.text")]
    edges = [link("e1", "A", "text", "B", "text"), link("e2", "B", "text", "A", "text")]
    await write_project(project_path, nodes, edges)
    runtime = await open_runtime(project_path)

    with pytest.raises(CycleError):
        await runtime.run_project()

    assert await RunStore.for_project(project_path).list_runs() == []
    assert not runtime.busy


@pytest.mark.asyncio
async def test_runs_are_queued_one_at_a_time(project_path: Path):
    nodes, edges = prompt_chain()
    await write_project(project_path, nodes, edges)
    runtime = await open_runtime(project_path)

    first, second = await asyncio.gather(runtime.run_project(), runtime.run_project())

    assert first.run_id != second.run_id
    # whichever ran second saw the first one's cache
    assert sorted([first.executed_node_ids, second.executed_node_ids]) == [[], ["text-1", "tpl-1"]]


# ---- failure isolation ----


@pytest.mark.asyncio
async def test_failed_fetch_leaves_text_generation_pending(project_path: Path, monkeypatch):
    def make_client(timeout):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream down"))
        return httpx.AsyncClient(transport=transport, timeout=timeout)

    monkeypatch.setattr(http_request, "_make_client", make_client)
    monkeypatch.setattr(http_request, "RETRY_BASE_DELAY_SECONDS", 0)
    nodes = [
        NodeInstance(id="fetch-1", kind="studio.http_request", config={"url": "https://example.test/article"}),
        NodeInstance(id="tpl-1", kind="studio.prompt_template", config={"template": "Summarize."}),
        NodeInstance(id="textgen-1", kind="studio.text_generation"),
    ]
    edges = [link("e1", "fetch-1", "body", "tpl-1", "text"), link("e2", "tpl-1", "prompt", "textgen-1", "prompt")]
    await write_project(project_path, nodes, edges)
    provider = FakeProvider()
    runtime = await open_runtime(project_path, provider)

    result = await runtime.run_project()

    assert result.status == RunStatus.FAILED
    assert result.failed_node_ids == ["fetch-1"]
    assert result.pending_node_ids == ["tpl-1", "textgen-1"]
    assert provider.jobs == 0
    runs = await RunStore.for_project(project_path).list_runs()
    assert runs[0]["status"] == "failed"
    assert runs[0]["pendingNodeIds"] == ["tpl-1", "textgen-1"]


# ---- managed outputs ----


def text_generation_project():
    nodes, edges = prompt_chain()
    nodes.append(NodeInstance(id="textgen-1", kind="studio.text_generation", title="Summary"))
    edges.append(link("e2", "tpl-1", "prompt", "textgen-1", "prompt"))
    return nodes, edges


@pytest.mark.asyncio
async def test_text_generation_output_is_mirrored_and_saved(project_path: Path):
    await write_project(project_path, *text_generation_project())
    runtime = await open_runtime(project_path, FakeProvider(text="Cats are great."))

    result = await runtime.run_project()

    assert result.success
    managed = [n for n in runtime.session.project.graph.nodes if n.config.get(MANAGED_BY_KEY) == TEXT_OUTPUT_OWNER]
    assert len(managed) == 1
    assert managed[0].config["value"] == "Cats are great."
    saved = json.loads(project_path.read_text())
    assert any(n["config"].get("value") == "Cats are great." for n in saved["graph"]["nodes"] if n["kind"] == "studio.text")


@pytest.mark.asyncio
async def test_image_outputs_are_mirrored_once(project_path: Path):
    nodes = [
        NodeInstance(id="text-1", kind="studio.text", config={"value": "a red bicycle"}),
        NodeInstance(id="gen-1", kind="studio.image_generation", title="Bike"),
    ]
    await write_project(project_path, nodes, [link("e1", "text-1", "text", "gen-1", "prompt")])
    provider = FakeProvider(images=2)
    runtime = await open_runtime(project_path, provider)

    first = await runtime.run_project()
    node_count = len(runtime.session.project.graph.nodes)
    second = await runtime.run_project()

    media = [n for n in runtime.session.project.graph.nodes if n.config.get(MANAGED_BY_KEY) == IMAGE_OUTPUT_OWNER]
    assert first.success and second.success
    assert len(media) == 2
    assert all(Path(n.config["sourcePath"]).exists() for n in media)
    assert node_count == 4
    assert len(runtime.session.project.graph.nodes) == 4
    assert "gen-1" in second.cached_node_ids
    assert provider.jobs == 1


@pytest.mark.asyncio
async def test_reconcile_failure_becomes_a_warning(project_path: Path, monkeypatch):
    def broken(graph, source_node_id, outputs, ids):
        raise RuntimeError("layout exploded")

    monkeypatch.setitem(studio_runtime.RECONCILERS, "studio.text_generation", broken)
    await write_project(project_path, *text_generation_project())
    runtime = await open_runtime(project_path, FakeProvider())

    result = await runtime.run_project()

    assert result.success
    assert len(result.warnings) == 1
    assert "layout exploded" in result.warnings[0]
    runs = await RunStore.for_project(project_path).list_runs()
    assert runs[0]["warnings"] == result.warnings


@pytest.mark.asyncio
async def test_node_deleted_during_run_is_not_reconciled(project_path: Path):
    await write_project(project_path, *text_generation_project())
    runtime = await open_runtime(project_path, FakeProvider())

    async def on_event(event):
        if event.type == "node.started" and event.node_id == "textgen-1":
            async with runtime.session.edit() as project:
                project.graph.remove_node("textgen-1")

    result = await runtime.run_project(RunOptions(on_event=on_event))

    assert result.success
    assert runtime.session.project.graph.node_ids() == {"text-1", "tpl-1"}
    # the deleted node's cache entry is pruned at the end of the run
    assert set(runtime.cache_store.entries) == {"text-1", "tpl-1"}


# ---- event delivery ----


@pytest.mark.asyncio
async def test_run_can_be_followed_through_an_event_channel(project_path: Path):
    nodes, edges = prompt_chain()
    await write_project(project_path, nodes, edges)
    bus = RunEventBus()
    runtime = await StudioRuntime.open(project_path, create_default_registry(), settings=settings(), event_bus=bus)
    channel = RunEventChannel(bus, "run_followed")

    run_task = asyncio.create_task(runtime.run_project(RunOptions(run_id="run_followed")))
    received = [event async for event in channel]
    result = await run_task

    assert result.run_id == "run_followed"
    assert [e.type for e in received] == [
        "run.started",
        "node.started",
        "node.output",
        "node.started",
        "node.output",
        "run.completed",
    ]
    assert {e.run_id for e in received} == {"run_followed"}
    assert not bus.has_subscriber("run_followed")
