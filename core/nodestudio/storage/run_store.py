"""
Run Store - per-project run history.

    <stem>.runs/
      ├── index.json              newest-first list of run summaries
      └── <runId>/events.ndjson   one event per line, in emission order

The index is pruned to the project's retention limit after every write;
pruned runs lose their directory as well.
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any

from nodestudio.runtime.run_events import RunEvent, event_from_dict
from nodestudio.storage.project_store import sidecar_path
from nodestudio.utils.io import atomic_write

logger = logging.getLogger(__name__)

RUN_INDEX_SCHEMA = "studio.run-index.v1"


class RunStore:
    def __init__(self, runs_dir: Path):
        self.runs_dir = Path(runs_dir)

    @classmethod
    def for_project(cls, project_path: Path) -> "RunStore":
        return cls(sidecar_path(project_path, ".runs"))

    @property
    def index_path(self) -> Path:
        return self.runs_dir / "index.json"

    def events_path(self, run_id: str) -> Path:
        return self.runs_dir / run_id / "events.ndjson"

    async def write_events(self, run_id: str, events: list[RunEvent]) -> None:
        lines = "".join(json.dumps(event.to_dict(), default=str) + "\n" for event in events)

        def _write() -> None:
            with atomic_write(self.events_path(run_id)) as f:
                f.write(lines)

        await asyncio.to_thread(_write)

    async def read_events(self, run_id: str) -> list[RunEvent]:
        def _read() -> list[RunEvent]:
            path = self.events_path(run_id)
            if not path.exists():
                return []
            events = []
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    events.append(event_from_dict(json.loads(line)))
            return events

        return await asyncio.to_thread(_read)

    async def list_runs(self) -> list[dict[str, Any]]:
        def _read() -> list[dict[str, Any]]:
            if not self.index_path.exists():
                return []
            try:
                data = json.loads(self.index_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Run index {self.index_path} is unreadable, starting fresh: {e}")
                return []
            runs = data.get("runs") if isinstance(data, dict) else None
            return [r for r in runs or [] if isinstance(r, dict) and r.get("runId")]

        return await asyncio.to_thread(_read)

    async def record_run(self, summary: dict[str, Any], max_runs: int) -> list[str]:
        """
        Add a run summary to the index and enforce retention.

        Returns the ids of runs pruned to stay within ``max_runs``.
        """
        runs = [r for r in await self.list_runs() if r.get("runId") != summary["runId"]]
        runs.insert(0, summary)
        keep = max(1, max_runs)
        pruned = [r["runId"] for r in runs[keep:]]
        runs = runs[:keep]

        def _write() -> None:
            with atomic_write(self.index_path) as f:
                f.write(json.dumps({"schema": RUN_INDEX_SCHEMA, "runs": runs}, indent=2) + "\n")
            for run_id in pruned:
                shutil.rmtree(self.runs_dir / run_id, ignore_errors=True)

        await asyncio.to_thread(_write)
        if pruned:
            logger.info(f"Pruned {len(pruned)} old run(s) beyond retention limit {keep}")
        return pruned
