"""
Project and graph data model.

Everything here round-trips through JSON with camelCase keys. Models allow
extra fields so documents written by newer versions keep their unknown
metadata when loaded and saved again by this one.

Graph mutations (add/remove node, connect/disconnect) go through methods on
Graph so that ``entry_node_ids`` is always recomputed and the structural
invariants (edges reference existing nodes and ports, no duplicate edges)
hold after every change.
"""

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, model_validator

from nodestudio.errors import GraphIntegrityError
from nodestudio.graph.ids import IdFactory
from nodestudio.graph.node import ports_compatible

if TYPE_CHECKING:
    from nodestudio.graph.registry import NodeRegistry

PROJECT_SCHEMA = "studio.project.v1"
DEFAULT_NODE_VERSION = "1.0.0"


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class Position(BaseModel):
    x: float = 0
    y: float = 0

    model_config = {"extra": "allow"}


class NodeInstance(BaseModel):
    """A concrete node placed in a project."""

    id: str
    kind: str
    version: str = DEFAULT_NODE_VERSION
    title: str = ""
    position: Position = Field(default_factory=Position)
    config: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    disabled: bool = False

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _default_title(self) -> "NodeInstance":
        if not self.title:
            self.title = self.kind or self.id
        return self


class Edge(BaseModel):
    """A connection from one node's output port to another node's input port."""

    id: str
    from_node_id: str = Field(alias="fromNodeId")
    from_port_id: str = Field(alias="fromPortId")
    to_node_id: str = Field(alias="toNodeId")
    to_port_id: str = Field(alias="toPortId")

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def endpoints(self) -> tuple[str, str, str, str]:
        return (self.from_node_id, self.from_port_id, self.to_node_id, self.to_port_id)


class NodeGroup(BaseModel):
    id: str
    name: str = ""
    color: str | None = None
    node_ids: list[str] = Field(default_factory=list, alias="nodeIds")

    model_config = {"extra": "allow", "populate_by_name": True}


class Graph(BaseModel):
    """Nodes, edges and the derived set of entry nodes."""

    nodes: list[NodeInstance] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    entry_node_ids: list[str] = Field(default_factory=list, alias="entryNodeIds")
    groups: list[NodeGroup] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _check_integrity(self) -> "Graph":
        errors = self.validate_structure()
        if errors:
            raise ValueError("; ".join(errors))
        self.recompute_entry_nodes()
        return self

    # ---- queries ----

    def get_node(self, node_id: str) -> NodeInstance | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def require_node(self, node_id: str) -> NodeInstance:
        node = self.get_node(node_id)
        if node is None:
            raise GraphIntegrityError(f"Unknown node '{node_id}'")
        return node

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.to_node_id == node_id]

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.from_node_id == node_id]

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def validate_structure(self) -> list[str]:
        """Return every structural problem (empty list when the graph is sound)."""
        errors = []
        seen_nodes: set[str] = set()
        for node in self.nodes:
            if node.id in seen_nodes:
                errors.append(f"Duplicate node id '{node.id}'")
            seen_nodes.add(node.id)

        seen_edges: set[tuple[str, str, str, str]] = set()
        for edge in self.edges:
            if edge.from_node_id not in seen_nodes:
                errors.append(f"Edge '{edge.id}' references missing source node '{edge.from_node_id}'")
            if edge.to_node_id not in seen_nodes:
                errors.append(f"Edge '{edge.id}' references missing target node '{edge.to_node_id}'")
            if edge.endpoints in seen_edges:
                errors.append(f"Edge '{edge.id}' duplicates an existing connection")
            seen_edges.add(edge.endpoints)
        return errors

    # ---- mutations ----

    def recompute_entry_nodes(self) -> list[str]:
        """Entry nodes are exactly the nodes with no inbound edge."""
        targets = {e.to_node_id for e in self.edges}
        self.entry_node_ids = [n.id for n in self.nodes if n.id not in targets]
        return self.entry_node_ids

    def add_node(self, node: NodeInstance) -> NodeInstance:
        if self.get_node(node.id) is not None:
            raise GraphIntegrityError(f"Node '{node.id}' already exists")
        self.nodes.append(node)
        self.recompute_entry_nodes()
        return node

    def remove_node(self, node_id: str) -> list[Edge]:
        """Remove a node and every edge touching it. Returns the removed edges."""
        self.require_node(node_id)
        removed = [e for e in self.edges if e.from_node_id == node_id or e.to_node_id == node_id]
        self.nodes = [n for n in self.nodes if n.id != node_id]
        self.edges = [e for e in self.edges if e.from_node_id != node_id and e.to_node_id != node_id]
        for group in self.groups:
            if node_id in group.node_ids:
                group.node_ids = [i for i in group.node_ids if i != node_id]
        self.recompute_entry_nodes()
        return removed

    def has_edge(self, from_node_id: str, from_port_id: str, to_node_id: str, to_port_id: str) -> bool:
        key = (from_node_id, from_port_id, to_node_id, to_port_id)
        return any(e.endpoints == key for e in self.edges)

    def add_edge(self, edge: Edge) -> Edge:
        """Append an edge after checking node existence and duplicates."""
        self.require_node(edge.from_node_id)
        self.require_node(edge.to_node_id)
        if self.has_edge(*edge.endpoints):
            raise GraphIntegrityError(
                f"Duplicate edge {edge.from_node_id}.{edge.from_port_id} -> {edge.to_node_id}.{edge.to_port_id}"
            )
        if any(e.id == edge.id for e in self.edges):
            raise GraphIntegrityError(f"Edge '{edge.id}' already exists")
        self.edges.append(edge)
        self.recompute_entry_nodes()
        return edge

    def connect(
        self,
        registry: "NodeRegistry",
        from_node_id: str,
        from_port_id: str,
        to_node_id: str,
        to_port_id: str,
        edge_id: str | None = None,
        ids: IdFactory | None = None,
    ) -> Edge:
        """Create an edge after checking that both ports exist and are type-compatible."""
        source = self.require_node(from_node_id)
        target = self.require_node(to_node_id)
        source_def = registry.require(source.kind, source.version)
        target_def = registry.require(target.kind, target.version)

        out_port = source_def.get_output_port(from_port_id)
        if out_port is None:
            raise GraphIntegrityError(f"{source.kind} has no output port '{from_port_id}'")
        in_port = target_def.get_input_port(to_port_id)
        if in_port is None:
            raise GraphIntegrityError(f"{target.kind} has no input port '{to_port_id}'")
        if not ports_compatible(out_port.type, in_port.type):
            raise GraphIntegrityError(
                f"Cannot connect {out_port.type} output '{from_port_id}' to {in_port.type} input '{to_port_id}'"
            )

        edge = Edge(
            id=edge_id or (ids or IdFactory()).edge_id(),
            from_node_id=from_node_id,
            from_port_id=from_port_id,
            to_node_id=to_node_id,
            to_port_id=to_port_id,
        )
        return self.add_edge(edge)

    def disconnect(self, edge_id: str) -> Edge:
        for edge in self.edges:
            if edge.id == edge_id:
                self.edges = [e for e in self.edges if e.id != edge_id]
                self.recompute_entry_nodes()
                return edge
        raise GraphIntegrityError(f"Unknown edge '{edge_id}'")


class RetentionSettings(BaseModel):
    # None defers to the global max_runs setting
    max_runs: int | None = Field(default=None, alias="maxRuns", ge=1)
    max_artifacts_mb: float | None = Field(default=None, alias="maxArtifactsMb")

    model_config = {"extra": "allow", "populate_by_name": True}


class ProjectSettings(BaseModel):
    retention: RetentionSettings = Field(default_factory=RetentionSettings)

    model_config = {"extra": "allow", "populate_by_name": True}


class Project(BaseModel):
    """Top-level persisted document."""

    schema_id: str = Field(default=PROJECT_SCHEMA, alias="schema")
    project_id: str = Field(alias="projectId")
    name: str = "Untitled"
    created_at: str = Field(default_factory=utc_now, alias="createdAt")
    updated_at: str = Field(default_factory=utc_now, alias="updatedAt")
    graph: Graph = Field(default_factory=Graph)
    settings: ProjectSettings = Field(default_factory=ProjectSettings)

    model_config = {"extra": "allow", "populate_by_name": True}

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def snapshot(self) -> "Project":
        """Deep copy used as an immutable view for a run."""
        return self.model_copy(deep=True)
