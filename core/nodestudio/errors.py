"""
Error taxonomy for graph validation and execution.

Fail-fast errors (config validation, cycles, missing definitions) are raised
before a run starts. Node-level errors are caught by the executor, reported
as ``node.failed`` events and isolated to the failing node.
"""

from typing import Any


class StudioError(Exception):
    """Base class for all nodestudio errors."""


class ConfigValidationError(StudioError):
    """One or more nodes carry a config that violates its schema."""

    def __init__(self, issues: dict[str, list[Any]]):
        self.issues = issues
        parts = []
        for node_id, node_issues in issues.items():
            joined = "; ".join(str(issue) for issue in node_issues)
            parts.append(f"{node_id}: {joined}")
        super().__init__("Invalid node config: " + " | ".join(parts))


class CycleError(StudioError):
    """The graph contains a dependency cycle and cannot be scheduled."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("Graph contains a cycle: " + " -> ".join(cycle))


class MissingDefinitionError(StudioError):
    """A node references a kind/version pair that is not registered."""

    def __init__(self, missing: list[tuple[str, str, str]]):
        # (node_id, kind, version)
        self.missing = missing
        described = ", ".join(f"{node_id} ({kind}@{version})" for node_id, kind, version in missing)
        super().__init__(f"No node definition registered for: {described}")


class GraphIntegrityError(StudioError):
    """A graph mutation would break a structural invariant."""


class RegistryFrozenError(StudioError):
    """The node registry no longer accepts registrations."""


class SubscriptionError(StudioError):
    """A run already has an active subscriber."""


class ProjectFormatError(StudioError):
    """A persisted project document could not be understood."""


class NodeExecutionError(StudioError):
    """A node's execute call failed."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)


class NodeTimeoutError(NodeExecutionError):
    """A node's execute call exceeded its configured wait."""

    def __init__(self, node_id: str | None, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Node timed out after {timeout_seconds:g}s", node_id=node_id)


class TransportError(NodeExecutionError):
    """A call to an external generation provider failed."""

    def __init__(self, message: str, status_code: int | None = None, node_id: str | None = None):
        self.status_code = status_code
        super().__init__(message, node_id=node_id)
