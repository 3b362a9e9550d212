"""
Tests for mirroring generation outputs into managed companion nodes.
"""

from nodestudio.graph.ids import IdFactory
from nodestudio.graph.managed_outputs import (
    IMAGE_OUTPUT_OWNER,
    MANAGED_BY_KEY,
    OUTPUT_HASH_KEY,
    SLOT_KEY,
    SOURCE_NODE_KEY,
    TEXT_OUTPUT_OWNER,
    extract_artifact_paths,
    materialize_image_outputs,
    materialize_text_outputs,
    text_output_hash,
)
from nodestudio.graph.project import Edge, Graph, NodeGroup, NodeInstance, Position


def image_graph(**source_kwargs):
    return Graph(
        nodes=[
            NodeInstance(
                id="gen-1",
                kind="studio.image_generation",
                title="Poster",
                position=Position(x=100, y=50),
                **source_kwargs,
            )
        ]
    )


def managed_media(graph):
    nodes = [n for n in graph.nodes if n.config.get(MANAGED_BY_KEY) == IMAGE_OUTPUT_OWNER]
    return sorted(nodes, key=lambda n: n.config[SLOT_KEY])


def test_extract_artifact_paths_accepts_strings_and_refs():
    outputs = {"images": ["a.png", {"path": "b.png", "hash": "x"}, {"url": "ignored"}, "  "]}

    assert extract_artifact_paths(outputs) == ["a.png", "b.png"]
    assert extract_artifact_paths({"images": "c.png"}) == ["c.png"]
    assert extract_artifact_paths({}) == []


def test_creates_one_managed_node_per_image():
    graph = image_graph()

    result = materialize_image_outputs(graph, "gen-1", {"images": ["a.png", "b.png"]}, IdFactory(seed="t"))

    assert result.changed
    assert len(result.created_node_ids) == 2
    assert len(result.created_edge_ids) == 2
    media = managed_media(graph)
    assert [n.config["sourcePath"] for n in media] == ["a.png", "b.png"]
    assert [n.config[SLOT_KEY] for n in media] == [0, 1]
    assert all(n.config[SOURCE_NODE_KEY] == "gen-1" for n in media)
    assert [n.title for n in media] == ["Poster Image 1", "Poster Image 2"]
    assert [(n.position.x, n.position.y) for n in media] == [(460, 50), (460, 290)]
    for n in media:
        assert graph.has_edge("gen-1", "images", n.id, "media")


def test_second_call_with_same_images_changes_nothing():
    graph = image_graph()
    ids = IdFactory(seed="t")
    materialize_image_outputs(graph, "gen-1", {"images": ["a.png", "b.png"]}, ids)
    before = graph.model_dump()

    result = materialize_image_outputs(graph, "gen-1", {"images": ["a.png", "b.png"]}, ids)

    assert not result.changed
    assert graph.model_dump() == before


def test_additional_image_adds_only_the_new_slot():
    graph = image_graph()
    ids = IdFactory(seed="t")
    materialize_image_outputs(graph, "gen-1", {"images": ["a.png", "b.png"]}, ids)
    existing = [n.id for n in managed_media(graph)]

    result = materialize_image_outputs(graph, "gen-1", {"images": ["a.png", "b.png", "c.png"]}, ids)

    media = managed_media(graph)
    assert len(media) == 3
    assert [n.id for n in media[:2]] == existing
    assert media[2].config["sourcePath"] == "c.png"
    assert media[2].config[SLOT_KEY] == 2
    assert len(result.created_node_ids) == 1
    assert result.updated_node_ids == []


def test_changed_image_updates_slot_in_place():
    graph = image_graph()
    ids = IdFactory(seed="t")
    materialize_image_outputs(graph, "gen-1", {"images": ["a.png"]}, ids)
    only = managed_media(graph)[0]
    only.disabled = True

    result = materialize_image_outputs(graph, "gen-1", {"images": ["z.png"]}, ids)

    assert result.updated_node_ids == [only.id]
    assert result.created_node_ids == []
    assert only.config["sourcePath"] == "z.png"
    assert not only.disabled
    assert only.title == "Poster Image"


def test_fewer_images_leave_extra_slots_untouched():
    graph = image_graph()
    ids = IdFactory(seed="t")
    materialize_image_outputs(graph, "gen-1", {"images": ["a.png", "b.png"]}, ids)

    result = materialize_image_outputs(graph, "gen-1", {"images": ["a.png"]}, ids)

    assert not result.changed
    assert [n.config["sourcePath"] for n in managed_media(graph)] == ["a.png", "b.png"]


def test_hand_wired_media_node_is_adopted():
    graph = image_graph()
    graph.add_node(NodeInstance(id="mine", kind="studio.media_ingest", config={"sourcePath": "a.png"}))
    graph.add_edge(Edge(id="e-user", from_node_id="gen-1", from_port_id="images", to_node_id="mine", to_port_id="path"))

    result = materialize_image_outputs(graph, "gen-1", {"images": ["a.png"]}, IdFactory(seed="t"))

    assert result.created_node_ids == []
    assert result.updated_node_ids == ["mine"]
    assert result.created_edge_ids == []
    adopted = graph.require_node("mine")
    assert adopted.config[MANAGED_BY_KEY] == IMAGE_OUTPUT_OWNER
    assert adopted.config[SLOT_KEY] == 0
    assert len(graph.edges) == 1


def test_companion_of_another_generator_is_not_adopted():
    graph = image_graph()
    graph.add_node(NodeInstance(id="gen-2", kind="studio.image_generation", title="Other"))
    materialize_image_outputs(graph, "gen-2", {"images": ["a.png"]}, IdFactory(seed="o"))
    theirs = managed_media(graph)[0]
    graph.add_edge(
        Edge(id="e-user", from_node_id="gen-1", from_port_id="images", to_node_id=theirs.id, to_port_id="path")
    )

    result = materialize_image_outputs(graph, "gen-1", {"images": ["a.png"]}, IdFactory(seed="t"))
    again = materialize_image_outputs(graph, "gen-2", {"images": ["a.png"]}, IdFactory(seed="o2"))

    assert theirs.id not in result.updated_node_ids
    assert len(result.created_node_ids) == 1
    assert theirs.config[SOURCE_NODE_KEY] == "gen-2"
    assert not again.changed


def test_new_managed_nodes_join_source_groups():
    graph = image_graph()
    graph.groups.append(NodeGroup(id="g1", node_ids=["gen-1"]))

    result = materialize_image_outputs(graph, "gen-1", {"images": ["a.png"]}, IdFactory(seed="t"))

    assert graph.groups[0].node_ids == ["gen-1", *result.created_node_ids]


def test_no_images_is_a_no_op():
    graph = image_graph()

    result = materialize_image_outputs(graph, "gen-1", {"images": []})

    assert not result.changed
    assert len(graph.nodes) == 1


def test_default_title_when_source_has_none():
    graph = Graph(nodes=[NodeInstance(id="gen-1", kind="studio.image_generation", title=" ")])

    materialize_image_outputs(graph, "gen-1", {"images": ["a.png"]}, IdFactory(seed="t"))

    assert managed_media(graph)[0].title == "Image Generation Image"


# ---- text ----


def text_graph():
    return Graph(nodes=[NodeInstance(id="textgen-1", kind="studio.text_generation", title="Summary")])


def test_text_output_creates_managed_text_node():
    graph = text_graph()

    result = materialize_text_outputs(graph, "textgen-1", {"text": "Hello"}, IdFactory(seed="t"))

    assert result.changed
    created = graph.require_node(result.created_node_ids[0])
    assert created.kind == "studio.text"
    assert created.title == "Summary Text"
    assert created.config["value"] == "Hello"
    assert created.config[MANAGED_BY_KEY] == TEXT_OUTPUT_OWNER
    assert created.config[OUTPUT_HASH_KEY] == text_output_hash("Hello")
    assert graph.has_edge("textgen-1", "text", created.id, "text")


def test_text_output_rewrites_only_when_text_changes():
    graph = text_graph()
    ids = IdFactory(seed="t")
    first = materialize_text_outputs(graph, "textgen-1", {"text": "Hello"}, ids)

    again = materialize_text_outputs(graph, "textgen-1", {"text": "Hello"}, ids)
    changed = materialize_text_outputs(graph, "textgen-1", {"text": "Goodbye"}, ids)

    assert not again.changed
    assert changed.updated_node_ids == first.created_node_ids
    managed = graph.require_node(first.created_node_ids[0])
    assert managed.config["value"] == "Goodbye"
    assert managed.config[OUTPUT_HASH_KEY] == text_output_hash("Goodbye")
    assert len(graph.nodes) == 2


def test_blank_text_is_ignored():
    graph = text_graph()

    assert not materialize_text_outputs(graph, "textgen-1", {"text": "  "}).changed
    assert not materialize_text_outputs(graph, "textgen-1", {}).changed
