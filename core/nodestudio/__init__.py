"""
NodeStudio - typed node-graph execution engine.

Projects are directed graphs of typed work units connected by typed ports.
A run walks the graph (or the ancestor-closed slice feeding one node) in
dependency order, reusing cached outputs where inputs are unchanged and
reporting progress as an ordered stream of run events.
"""

from nodestudio.errors import (
    ConfigValidationError,
    CycleError,
    MissingDefinitionError,
    NodeExecutionError,
    NodeTimeoutError,
    StudioError,
    TransportError,
)
from nodestudio.graph.executor import GraphExecutor, RunResult, RunStatus
from nodestudio.graph.project import Edge, Graph, NodeInstance, Project
from nodestudio.graph.registry import NodeRegistry
from nodestudio.graph.scope import scope_for_run
from nodestudio.runtime.studio_runtime import RunOptions, StudioRuntime

__version__ = "0.3.0"

__all__ = [
    "ConfigValidationError",
    "CycleError",
    "Edge",
    "Graph",
    "GraphExecutor",
    "MissingDefinitionError",
    "NodeExecutionError",
    "NodeInstance",
    "NodeRegistry",
    "NodeTimeoutError",
    "Project",
    "RunOptions",
    "RunResult",
    "RunStatus",
    "StudioError",
    "StudioRuntime",
    "TransportError",
    "scope_for_run",
]
