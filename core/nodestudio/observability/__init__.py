"""
Observability for graph runs.

Log records automatically pick up the active run/node context, so code
inside node execution can use a plain ``logger.info`` and still be
correlated with the run that triggered it.
"""

from nodestudio.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
