"""Run event types.

A discriminated union of frozen dataclasses describing everything a run
reports. For a single run the executor guarantees ``run.started`` comes
first and ``run.completed`` comes last; ``run.failed`` (when present) is
immediately followed by ``run.completed``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class RunStarted:
    """The run passed preflight and is about to schedule nodes."""

    type: Literal["run.started"] = "run.started"
    run_id: str = ""
    snapshot_hash: str = ""  # hash of the scoped graph being executed
    at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "runId": self.run_id, "snapshotHash": self.snapshot_hash, "at": self.at}


@dataclass(frozen=True)
class RunFailed:
    type: Literal["run.failed"] = "run.failed"
    run_id: str = ""
    error: str = ""
    error_stack: str | None = None
    at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "runId": self.run_id,
            "error": self.error,
            "errorStack": self.error_stack,
            "at": self.at,
        }


@dataclass(frozen=True)
class RunCompleted:
    """Always the last event of a run."""

    type: Literal["run.completed"] = "run.completed"
    run_id: str = ""
    status: Literal["success", "failed", "cancelled"] = "success"
    at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "runId": self.run_id, "status": self.status, "at": self.at}


@dataclass(frozen=True)
class NodeStarted:
    type: Literal["node.started"] = "node.started"
    run_id: str = ""
    node_id: str = ""
    at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "runId": self.run_id, "nodeId": self.node_id, "at": self.at}


@dataclass(frozen=True)
class NodeCacheHit:
    type: Literal["node.cache_hit"] = "node.cache_hit"
    run_id: str = ""
    node_id: str = ""
    at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "runId": self.run_id, "nodeId": self.node_id, "at": self.at}


@dataclass(frozen=True)
class NodeOutput:
    """Outputs of a node, whether freshly executed or served from cache."""

    type: Literal["node.output"] = "node.output"
    run_id: str = ""
    node_id: str = ""
    outputs: dict[str, Any] = field(default_factory=dict)
    source: Literal["execution", "cache"] = "execution"
    at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "runId": self.run_id,
            "nodeId": self.node_id,
            "outputs": self.outputs,
            "outputSource": self.source,
            "at": self.at,
        }


@dataclass(frozen=True)
class NodeFailed:
    type: Literal["node.failed"] = "node.failed"
    run_id: str = ""
    node_id: str = ""
    error: str = ""
    error_stack: str | None = None
    at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "runId": self.run_id,
            "nodeId": self.node_id,
            "error": self.error,
            "errorStack": self.error_stack,
            "at": self.at,
        }


RunEvent = RunStarted | RunFailed | RunCompleted | NodeStarted | NodeCacheHit | NodeOutput | NodeFailed

TERMINAL_EVENT_TYPE = "run.completed"


def event_from_dict(data: dict[str, Any]) -> RunEvent:
    """Rebuild an event from its ``to_dict`` form (e.g. a line of events.ndjson)."""
    event_type = data.get("type")
    run_id = data.get("runId", "")
    at = data.get("at") or _now()
    if event_type == "run.started":
        return RunStarted(run_id=run_id, snapshot_hash=data.get("snapshotHash", ""), at=at)
    if event_type == "run.failed":
        return RunFailed(run_id=run_id, error=data.get("error", ""), error_stack=data.get("errorStack"), at=at)
    if event_type == "run.completed":
        return RunCompleted(run_id=run_id, status=data.get("status", "success"), at=at)
    if event_type == "node.started":
        return NodeStarted(run_id=run_id, node_id=data.get("nodeId", ""), at=at)
    if event_type == "node.cache_hit":
        return NodeCacheHit(run_id=run_id, node_id=data.get("nodeId", ""), at=at)
    if event_type == "node.output":
        return NodeOutput(
            run_id=run_id,
            node_id=data.get("nodeId", ""),
            outputs=data.get("outputs") or {},
            source=data.get("outputSource", "execution"),
            at=at,
        )
    if event_type == "node.failed":
        return NodeFailed(
            run_id=run_id,
            node_id=data.get("nodeId", ""),
            error=data.get("error", ""),
            error_stack=data.get("errorStack"),
            at=at,
        )
    raise ValueError(f"Unknown run event type: {event_type!r}")
