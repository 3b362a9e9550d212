"""
Node Cache Store - per-project cache of node outputs keyed by node id.

Persisted next to the project file as ``<stem>.cache.json``:

    {
      "schema": "studio.node-cache.v1",
      "projectId": "...",
      "updatedAt": "...",
      "entries": {"<nodeId>": {nodeKind, nodeVersion, inputFingerprint, outputs, ...}}
    }

An entry is only reused when kind, version and input fingerprint all
match, so editing a node's config or anything upstream of it invalidates
the entry without explicit bookkeeping.
"""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from nodestudio.graph.project import utc_now
from nodestudio.storage.project_store import sidecar_path
from nodestudio.utils.io import atomic_write

logger = logging.getLogger(__name__)

CACHE_SCHEMA = "studio.node-cache.v1"
FINGERPRINT_SALT = "studio.node-input.v1"

# UI-only keys written back into a node's config that must not bust its cache
_DISPLAY_ONLY_CONFIG_KEYS: dict[str, tuple[str, ...]] = {
    "studio.text_generation": ("value", "textDisplayMode"),
}


def stable_json(value: Any) -> str:
    """JSON rendering with sorted keys and no whitespace, for hashing."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def build_input_fingerprint(
    kind: str,
    version: str,
    config: dict[str, Any],
    inputs: dict[str, Any],
) -> str:
    """SHA-256 over (salt, kind, version, config, inputs)."""
    effective_config = dict(config)
    if not effective_config.get("lockOutput"):
        for key in _DISPLAY_ONLY_CONFIG_KEYS.get(kind, ()):
            effective_config.pop(key, None)
    payload = {
        "salt": FINGERPRINT_SALT,
        "kind": kind,
        "version": version,
        "config": effective_config,
        "inputs": inputs,
    }
    return hashlib.sha256(stable_json(payload).encode("utf-8")).hexdigest()


class CacheEntry(BaseModel):
    node_id: str = Field(alias="nodeId")
    node_kind: str = Field(alias="nodeKind")
    node_version: str = Field(alias="nodeVersion")
    input_fingerprint: str = Field(alias="inputFingerprint")
    outputs: dict[str, Any] = Field(default_factory=dict)
    artifacts: list[dict[str, Any]] | None = None
    updated_at: str = Field(default_factory=utc_now, alias="updatedAt")
    run_id: str = Field(default="", alias="runId")

    model_config = {"extra": "allow", "populate_by_name": True}


class CacheSnapshot(BaseModel):
    schema_id: str = Field(default=CACHE_SCHEMA, alias="schema")
    project_id: str = Field(alias="projectId")
    updated_at: str = Field(default_factory=utc_now, alias="updatedAt")
    entries: dict[str, CacheEntry] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}


class NodeCacheStore:
    """
    In-memory cache snapshot with optional file persistence.

    With ``path=None`` the store never touches disk, which is what the
    executor tests use.
    """

    def __init__(self, project_id: str, path: Path | None = None):
        self.project_id = project_id
        self.path = Path(path) if path is not None else None
        self._snapshot = CacheSnapshot(project_id=project_id)

    @classmethod
    def for_project(cls, project_path: Path, project_id: str) -> "NodeCacheStore":
        return cls(project_id=project_id, path=sidecar_path(project_path, ".cache.json"))

    async def load(self) -> CacheSnapshot:
        """Load the snapshot from disk. Missing, malformed or foreign files load as empty."""

        def _read() -> CacheSnapshot:
            empty = CacheSnapshot(project_id=self.project_id)
            if self.path is None or not self.path.exists():
                return empty
            try:
                snapshot = CacheSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
            except (ValidationError, OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable node cache {self.path}: {e}")
                return empty
            if snapshot.schema_id != CACHE_SCHEMA or snapshot.project_id != self.project_id:
                logger.info(f"Ignoring node cache {self.path} written for another project or schema")
                return empty
            return snapshot

        self._snapshot = await asyncio.to_thread(_read)
        return self._snapshot

    async def save(self) -> None:
        if self.path is None:
            return
        self._snapshot.updated_at = utc_now()
        document = self._snapshot.model_dump_json(by_alias=True, indent=2)

        def _write() -> None:
            with atomic_write(self.path) as f:
                f.write(document + "\n")

        await asyncio.to_thread(_write)
        logger.debug(f"Saved node cache with {len(self._snapshot.entries)} entries to {self.path}")

    # ---- entry access ----

    @property
    def entries(self) -> dict[str, CacheEntry]:
        return self._snapshot.entries

    def get_entry(self, node_id: str) -> CacheEntry | None:
        return self._snapshot.entries.get(node_id)

    def lookup(self, node_id: str, kind: str, version: str, fingerprint: str) -> CacheEntry | None:
        """Return the entry only if it was produced by the same kind, version and inputs."""
        entry = self._snapshot.entries.get(node_id)
        if entry is None:
            return None
        if entry.node_kind != kind or entry.node_version != version or entry.input_fingerprint != fingerprint:
            return None
        return entry

    def store(
        self,
        node_id: str,
        kind: str,
        version: str,
        fingerprint: str,
        outputs: dict[str, Any],
        run_id: str,
        artifacts: list[dict[str, Any]] | None = None,
    ) -> CacheEntry:
        entry = CacheEntry(
            node_id=node_id,
            node_kind=kind,
            node_version=version,
            input_fingerprint=fingerprint,
            outputs=outputs,
            artifacts=artifacts or None,
            run_id=run_id,
        )
        self._snapshot.entries[node_id] = entry
        return entry

    def remove(self, node_id: str) -> bool:
        return self._snapshot.entries.pop(node_id, None) is not None

    def prune(self, live_node_ids: set[str]) -> list[str]:
        """Drop entries for nodes that no longer exist. Returns the dropped ids."""
        stale = [node_id for node_id in self._snapshot.entries if node_id not in live_node_ids]
        for node_id in stale:
            del self._snapshot.entries[node_id]
        if stale:
            logger.debug(f"Pruned {len(stale)} stale cache entries")
        return stale

    def clear(self) -> None:
        self._snapshot.entries.clear()
