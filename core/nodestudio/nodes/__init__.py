"""
Built-in node definitions.

Call ``register_builtin_nodes(registry)`` once at startup, before freezing
the registry.
"""

from nodestudio.graph.node import NodeDefinition
from nodestudio.graph.registry import NodeRegistry
from nodestudio.nodes.cli_command import CLI_COMMAND_NODE
from nodestudio.nodes.generation import IMAGE_GENERATION_NODE, TEXT_GENERATION_NODE
from nodestudio.nodes.http_request import HTTP_REQUEST_NODE
from nodestudio.nodes.literals import TEXT_NODE, VALUE_NODE
from nodestudio.nodes.media_ingest import MEDIA_INGEST_NODE
from nodestudio.nodes.prompt_template import PROMPT_TEMPLATE_NODE

BUILTIN_NODES: tuple[NodeDefinition, ...] = (
    TEXT_NODE,
    VALUE_NODE,
    PROMPT_TEMPLATE_NODE,
    CLI_COMMAND_NODE,
    HTTP_REQUEST_NODE,
    MEDIA_INGEST_NODE,
    TEXT_GENERATION_NODE,
    IMAGE_GENERATION_NODE,
)


def register_builtin_nodes(registry: NodeRegistry) -> NodeRegistry:
    for definition in BUILTIN_NODES:
        registry.register(definition)
    return registry


def create_default_registry() -> NodeRegistry:
    """A frozen registry holding every built-in node."""
    return register_builtin_nodes(NodeRegistry()).freeze()


__all__ = ["BUILTIN_NODES", "create_default_registry", "register_builtin_nodes"]
