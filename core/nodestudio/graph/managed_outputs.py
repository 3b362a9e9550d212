"""
Managed output nodes - mirror generated artifacts back into the graph.

After a generation node produces output, every artifact gets one companion
node ("managed node") wired to the generator. Managed nodes carry reserved
config keys naming their owner, their source node and their slot, so a
later run finds and updates them instead of creating duplicates:

    __studio_managed_by            owner tag (image or text variant)
    __studio_source_node_id        id of the generating node
    __studio_source_output_index   0-based slot in the artifact list
    __studio_source_output_hash    hash of the mirrored text (text variant only)

Reconciliation is idempotent: calling it again with the same artifacts
changes nothing. When a later run returns fewer artifacts, managed nodes in
the now-unused slots are left as they are.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any

from nodestudio.graph.ids import IdFactory
from nodestudio.graph.project import DEFAULT_NODE_VERSION, Edge, Graph, NodeInstance, Position

logger = logging.getLogger(__name__)

MANAGED_BY_KEY = "__studio_managed_by"
SOURCE_NODE_KEY = "__studio_source_node_id"
SLOT_KEY = "__studio_source_output_index"
OUTPUT_HASH_KEY = "__studio_source_output_hash"

IMAGE_OUTPUT_OWNER = "studio.image_generation_output.v1"
TEXT_OUTPUT_OWNER = "studio.text_generation_output.v1"

MEDIA_NODE_KIND = "studio.media_ingest"
TEXT_NODE_KIND = "studio.text"

IMAGE_SOURCE_PORT = "images"
MEDIA_TARGET_PORT = "media"
ADOPTABLE_TARGET_PORTS = ("media", "path")
TEXT_SOURCE_PORT = "text"
TEXT_TARGET_PORT = "text"

COLUMN_OFFSET_X = 360
ROW_OFFSET_Y = 240


@dataclass
class MaterializeResult:
    """What a reconciliation pass touched; persist once when ``changed``."""

    changed: bool = False
    created_node_ids: list[str] = field(default_factory=list)
    updated_node_ids: list[str] = field(default_factory=list)
    created_edge_ids: list[str] = field(default_factory=list)

    def _refresh(self) -> "MaterializeResult":
        self.changed = bool(self.created_node_ids or self.updated_node_ids or self.created_edge_ids)
        return self


def extract_artifact_paths(outputs: dict[str, Any] | None, port_id: str = IMAGE_SOURCE_PORT) -> list[str]:
    """Ordered artifact paths from a generation node's output port."""
    raw = (outputs or {}).get(port_id)
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    paths = []
    for item in items:
        if isinstance(item, str) and item.strip():
            paths.append(item)
        elif isinstance(item, dict) and isinstance(item.get("path"), str) and item["path"].strip():
            paths.append(item["path"])
    return paths


def _slot_of(node: NodeInstance) -> int | None:
    slot = node.config.get(SLOT_KEY)
    if isinstance(slot, bool) or not isinstance(slot, int) or slot < 0:
        return None
    return slot


def _managed_by_slot(graph: Graph, source_node_id: str, owner: str) -> dict[int, NodeInstance]:
    indexed: dict[int, NodeInstance] = {}
    for node in graph.nodes:
        if node.config.get(MANAGED_BY_KEY) != owner or node.config.get(SOURCE_NODE_KEY) != source_node_id:
            continue
        slot = _slot_of(node)
        if slot is None:
            continue
        if slot in indexed:
            logger.warning(f"Managed nodes {indexed[slot].id} and {node.id} share slot {slot}; keeping the first")
            continue
        indexed[slot] = node
    return indexed


def _apply_config(node: NodeInstance, desired: dict[str, Any]) -> bool:
    """Write only the keys that differ. Returns True when anything changed."""
    changed = False
    for key, value in desired.items():
        if node.config.get(key) != value:
            node.config[key] = value
            changed = True
    if node.disabled:
        node.disabled = False
        changed = True
    return changed


def _has_wire(graph: Graph, source_id: str, source_port: str, target_id: str, target_ports: tuple[str, ...]) -> bool:
    return any(
        e.from_node_id == source_id and e.from_port_id == source_port and e.to_node_id == target_id
        for e in graph.edges
        if e.to_port_id in target_ports
    )


def _wire(graph: Graph, ids: IdFactory, source_id: str, source_port: str, target_id: str, target_port: str) -> Edge:
    edge = Edge(
        id=ids.edge_id(),
        from_node_id=source_id,
        from_port_id=source_port,
        to_node_id=target_id,
        to_port_id=target_port,
    )
    return graph.add_edge(edge)


def _join_source_groups(graph: Graph, source_id: str, node_id: str) -> None:
    for group in graph.groups:
        if source_id in group.node_ids and node_id not in group.node_ids:
            group.node_ids.append(node_id)


def _companion_position(source: NodeInstance, slot: int) -> Position:
    return Position(x=source.position.x + COLUMN_OFFSET_X, y=source.position.y + slot * ROW_OFFSET_Y)


def _image_title(source: NodeInstance, slot: int, total: int) -> str:
    base = (source.title or "").strip() or "Image Generation"
    return f"{base} Image" if total <= 1 else f"{base} Image {slot + 1}"


def _find_adoptable(
    graph: Graph,
    source_id: str,
    path: str,
    claimed: set[str],
) -> NodeInstance | None:
    """A media node the user wired to the generator by hand that already shows ``path``."""
    for edge in graph.get_outgoing_edges(source_id):
        if edge.from_port_id != IMAGE_SOURCE_PORT or edge.to_port_id not in ADOPTABLE_TARGET_PORTS:
            continue
        if edge.to_node_id in claimed:
            continue
        target = graph.get_node(edge.to_node_id)
        if target is None or target.kind != MEDIA_NODE_KIND:
            continue
        if target.config.get(MANAGED_BY_KEY) not in (None, IMAGE_OUTPUT_OWNER):
            continue
        # never take over a companion that belongs to another generator
        if target.config.get(SOURCE_NODE_KEY) not in (None, source_id):
            continue
        if target.config.get("sourcePath") == path:
            return target
    return None


def materialize_image_outputs(
    graph: Graph,
    source_node_id: str,
    outputs: dict[str, Any] | None,
    ids: IdFactory | None = None,
) -> MaterializeResult:
    """
    Make ``graph`` hold exactly one managed media node per generated image.

    Slot ``i`` is kept by, in order of preference: the managed node already
    at slot ``i``; a hand-wired media node showing the same path (adopted);
    a newly created node placed to the right of the source.
    """
    ids = ids or IdFactory()
    result = MaterializeResult()
    paths = extract_artifact_paths(outputs)
    if not paths:
        return result

    source = graph.require_node(source_node_id)
    managed = _managed_by_slot(graph, source_node_id, IMAGE_OUTPUT_OWNER)
    claimed = {node.id for node in managed.values()}

    for slot, path in enumerate(paths):
        desired = {
            "sourcePath": path,
            MANAGED_BY_KEY: IMAGE_OUTPUT_OWNER,
            SOURCE_NODE_KEY: source_node_id,
            SLOT_KEY: slot,
        }
        node = managed.get(slot)
        if node is None:
            node = _find_adoptable(graph, source_node_id, path, claimed)
            if node is not None:
                logger.info(f"Adopting {node.id} as image slot {slot} of {source_node_id}")
                claimed.add(node.id)

        if node is not None:
            if _apply_config(node, desired):
                result.updated_node_ids.append(node.id)
        else:
            node = NodeInstance(
                id=ids.node_id(),
                kind=MEDIA_NODE_KIND,
                version=DEFAULT_NODE_VERSION,
                title=_image_title(source, slot, len(paths)),
                position=_companion_position(source, slot),
                config=desired,
            )
            graph.add_node(node)
            _join_source_groups(graph, source_node_id, node.id)
            claimed.add(node.id)
            result.created_node_ids.append(node.id)

        if not _has_wire(graph, source_node_id, IMAGE_SOURCE_PORT, node.id, ADOPTABLE_TARGET_PORTS):
            edge = _wire(graph, ids, source_node_id, IMAGE_SOURCE_PORT, node.id, MEDIA_TARGET_PORT)
            result.created_edge_ids.append(edge.id)

    result._refresh()
    if result.changed:
        logger.info(
            f"Reconciled {len(paths)} image output(s) of {source_node_id}: "
            f"{len(result.created_node_ids)} created, {len(result.updated_node_ids)} updated"
        )
    return result


def text_output_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def materialize_text_outputs(
    graph: Graph,
    source_node_id: str,
    outputs: dict[str, Any] | None,
    ids: IdFactory | None = None,
) -> MaterializeResult:
    """
    Mirror a text generation result into the source's managed text node.

    The node's ``value`` and content hash are rewritten only when the text
    actually changed, so repeated runs producing the same text are no-ops.
    """
    ids = ids or IdFactory()
    result = MaterializeResult()
    text = (outputs or {}).get(TEXT_SOURCE_PORT)
    if not isinstance(text, str) or not text.strip():
        return result

    source = graph.require_node(source_node_id)
    desired = {
        "value": text,
        MANAGED_BY_KEY: TEXT_OUTPUT_OWNER,
        SOURCE_NODE_KEY: source_node_id,
        SLOT_KEY: 0,
        OUTPUT_HASH_KEY: text_output_hash(text),
    }

    node = _managed_by_slot(graph, source_node_id, TEXT_OUTPUT_OWNER).get(0)
    if node is not None:
        if _apply_config(node, desired):
            result.updated_node_ids.append(node.id)
    else:
        base = (source.title or "").strip() or "Text Generation"
        node = NodeInstance(
            id=ids.node_id(),
            kind=TEXT_NODE_KIND,
            version=DEFAULT_NODE_VERSION,
            title=f"{base} Text",
            position=_companion_position(source, 0),
            config=desired,
        )
        graph.add_node(node)
        _join_source_groups(graph, source_node_id, node.id)
        result.created_node_ids.append(node.id)

    if not _has_wire(graph, source_node_id, TEXT_SOURCE_PORT, node.id, (TEXT_TARGET_PORT,)):
        edge = _wire(graph, ids, source_node_id, TEXT_SOURCE_PORT, node.id, TEXT_TARGET_PORT)
        result.created_edge_ids.append(edge.id)

    return result._refresh()
