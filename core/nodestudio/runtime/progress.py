"""
Run progress aggregation.

Folds the run event stream into per-node display state and a run-level
progress summary (completed / total / percent). A node is counted as
complete at most once per run, so ``node.cache_hit`` followed by
``node.output`` for the same node moves the counter by one.
"""

import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

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

NODE_STATUSES = ("idle", "pending", "running", "cached", "succeeded", "failed")
_TERMINAL = frozenset({"cached", "succeeded", "failed"})


@dataclass
class NodeDisplayState:
    status: str = "idle"
    message: str = ""
    updated_at: str | None = None
    outputs: dict[str, Any] | None = None
    complete_counted: bool = False


@dataclass(frozen=True)
class RunProgress:
    status: str = "idle"  # idle | running | success | failed | cancelled
    run_id: str | None = None
    total: int = 0
    completed: int = 0
    percent: int = 0
    from_node_id: str | None = None
    message: str = ""


def _percent(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(completed / total * 100))


def _preview(value: Any, limit: int = 120) -> str:
    if isinstance(value, str):
        text = value
    elif value is None or isinstance(value, bool | int | float):
        text = str(value)
    else:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            return "[complex]"
    return text if len(text) <= limit else text[: limit - 3] + "..."


def format_node_output_preview(outputs: dict[str, Any] | None) -> str:
    """One-line summary of a node's outputs for status lines."""
    if not outputs:
        return ""
    path = outputs.get("path")
    if isinstance(path, str) and path.strip():
        return f"path: {path}"
    text = outputs.get("text")
    if isinstance(text, str) and text.strip():
        return _preview(text.strip(), 160)
    first_key = next(iter(outputs))
    return f"{first_key}: {_preview(outputs[first_key])}"


class RunProgressAggregator:
    """Consumer of run events producing display state."""

    def __init__(self) -> None:
        self._nodes: dict[str, NodeDisplayState] = {}
        self._progress = RunProgress()

    def reset(self) -> None:
        self._nodes.clear()
        self._progress = RunProgress()

    def remove_node(self, node_id: str) -> None:
        self._nodes.pop(node_id, None)

    def hydrate_from_cache(self, entries: dict[str, Any] | None, allowed_node_ids: list[str] | None = None) -> None:
        """
        Pre-seed nodes as ``cached`` from persisted cache entries.

        ``entries`` maps node id to an object (or dict) with ``outputs`` and
        ``updated_at``/``updatedAt``. Entries with empty outputs are ignored.
        """
        if not entries:
            return
        allowed = {i.strip() for i in allowed_node_ids if i and i.strip()} if allowed_node_ids is not None else None
        for raw_id, entry in entries.items():
            node_id = (raw_id or "").strip()
            if not node_id or (allowed is not None and node_id not in allowed):
                continue
            if isinstance(entry, dict):
                outputs = entry.get("outputs")
                updated_at = entry.get("updatedAt") or entry.get("updated_at")
            else:
                outputs = getattr(entry, "outputs", None)
                updated_at = getattr(entry, "updated_at", None)
            if not isinstance(outputs, dict) or not outputs:
                continue
            self._set(
                node_id,
                status="cached",
                message="Cache ready",
                updated_at=updated_at or None,
                outputs=outputs,
                complete_counted=True,
            )

    def begin_run(self, node_ids: list[str], from_node_id: str | None = None) -> None:
        scoped = list(dict.fromkeys(i.strip() for i in node_ids if i and i.strip()))
        for node_id in scoped:
            self._set(node_id, status="pending", message="", updated_at=None, complete_counted=False)
        self._progress = RunProgress(
            status="running",
            total=len(scoped),
            from_node_id=(from_node_id or "").strip() or None,
            message="Preparing run..." if scoped else "",
        )

    def fail_before_run(self, message: str) -> None:
        """The run was refused before it started (validation, cycle, ...)."""
        self._progress = replace(
            self._progress,
            status="failed",
            message=message or "Run failed.",
            percent=_percent(self._progress.completed, self._progress.total),
        )

    def apply_event(self, event: RunEvent) -> None:
        at = event.at or None
        progress = self._progress

        if isinstance(event, RunStarted):
            self._progress = replace(progress, status="running", run_id=event.run_id, message="Running graph...")

        elif isinstance(event, RunFailed):
            self._progress = replace(progress, status="failed", run_id=event.run_id, message=event.error or "Run failed.")

        elif isinstance(event, RunCompleted):
            messages = {"success": "Run completed.", "cancelled": "Run cancelled."}
            self._progress = replace(
                progress,
                run_id=event.run_id,
                status=event.status,
                percent=_percent(progress.completed, progress.total),
                message=messages.get(event.status, "Run failed."),
            )

        elif isinstance(event, NodeStarted):
            self._set(event.node_id, status="running", message="", updated_at=at)
            self._progress = replace(progress, run_id=event.run_id, status="running", message="Running graph...")

        elif isinstance(event, NodeCacheHit):
            self._set(event.node_id, status="cached", message="Cache hit", updated_at=at)
            self._mark_completed(event.node_id)
            self._progress = replace(self._progress, run_id=event.run_id)

        elif isinstance(event, NodeOutput):
            current = self._nodes.get(event.node_id) or NodeDisplayState()
            if current.status == "cached":
                status, message = "cached", current.message or "Cache hit"
            elif current.status == "failed":
                status, message = "failed", current.message or "Failed"
            else:
                status, message = "succeeded", "Completed"
            self._set(
                event.node_id,
                status=status,
                message=message,
                updated_at=at,
                outputs=event.outputs if event.outputs is not None else current.outputs,
            )
            if status != "failed":
                self._mark_completed(event.node_id)
            self._progress = replace(self._progress, run_id=event.run_id)

        elif isinstance(event, NodeFailed):
            self._set(event.node_id, status="failed", message=event.error or "Node failed.", updated_at=at)
            self._mark_completed(event.node_id)
            self._progress = replace(
                self._progress,
                run_id=event.run_id,
                status="running",
                message=event.error or "Node failed.",
            )

    def get_progress(self) -> RunProgress:
        return self._progress

    def get_node_state(self, node_id: str) -> NodeDisplayState:
        state = self._nodes.get(node_id) or NodeDisplayState()
        return replace(state)

    def get_node_output(self, node_id: str) -> dict[str, Any] | None:
        state = self._nodes.get(node_id)
        return state.outputs if state else None

    def prime_node_output(
        self,
        node_id: str,
        outputs: dict[str, Any],
        message: str = "Preview ready",
        updated_at: str | None = None,
    ) -> None:
        """Show outputs produced outside a run (e.g. a preview) as succeeded."""
        node_id = (node_id or "").strip()
        if not node_id or not isinstance(outputs, dict):
            return
        self._set(
            node_id,
            status="succeeded",
            message=message,
            updated_at=updated_at or datetime.now(UTC).isoformat(),
            outputs=dict(outputs),
            complete_counted=True,
        )

    def _set(self, node_id: str, **changes: Any) -> None:
        current = self._nodes.get(node_id) or NodeDisplayState()
        self._nodes[node_id] = replace(current, **changes)

    def _mark_completed(self, node_id: str) -> None:
        state = self._nodes.get(node_id)
        if state is None or state.status not in _TERMINAL or state.complete_counted:
            return
        state.complete_counted = True
        completed = self._progress.completed + 1
        self._progress = replace(
            self._progress,
            completed=completed,
            percent=_percent(completed, self._progress.total),
        )


__all__ = [
    "NODE_STATUSES",
    "NodeDisplayState",
    "RunProgress",
    "RunProgressAggregator",
    "format_node_output_preview",
]
