"""
Node Registry - lookup table from (kind, version) to NodeDefinition.

Populated once at process start (see ``nodestudio.nodes.register_builtin_nodes``)
and then frozen; nothing is discovered dynamically while runs are executing.
"""

import logging

from nodestudio.errors import MissingDefinitionError, RegistryFrozenError
from nodestudio.graph.node import NodeDefinition

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Maps (kind, version) pairs to node definitions."""

    def __init__(self, definitions: list[NodeDefinition] | None = None):
        self._definitions: dict[tuple[str, str], NodeDefinition] = {}
        self._frozen = False
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: NodeDefinition) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {definition.kind}@{definition.version}: registry is frozen")
        if definition.key in self._definitions:
            raise ValueError(f"Node definition {definition.kind}@{definition.version} is already registered")
        self._definitions[definition.key] = definition
        logger.debug(f"Registered node definition {definition.kind}@{definition.version}")

    def freeze(self) -> "NodeRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, kind: str, version: str) -> NodeDefinition | None:
        return self._definitions.get((kind, version))

    def require(self, kind: str, version: str, node_id: str = "") -> NodeDefinition:
        definition = self.get(kind, version)
        if definition is None:
            raise MissingDefinitionError([(node_id, kind, version)])
        return definition

    def definitions(self) -> list[NodeDefinition]:
        return sorted(self._definitions.values(), key=lambda d: d.key)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
