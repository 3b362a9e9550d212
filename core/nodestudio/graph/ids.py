"""Identifier generation for nodes and edges created at runtime."""

import uuid
from dataclasses import dataclass, field


@dataclass
class IdFactory:
    """
    Produces ``node_<hex>`` / ``edge_<hex>`` ids.

    Pass ``seed`` to get a deterministic counter-based sequence instead of
    random ids; ``reset()`` restarts that sequence.
    """

    seed: str | None = None
    _counter: int = field(default=0, init=False)

    def _next(self, prefix: str) -> str:
        if self.seed is None:
            return f"{prefix}_{uuid.uuid4().hex[:12]}"
        self._counter += 1
        return f"{prefix}_{self.seed}{self._counter:04d}"

    def node_id(self) -> str:
        return self._next("node")

    def edge_id(self) -> str:
        return self._next("edge")

    def reset(self) -> None:
        self._counter = 0
