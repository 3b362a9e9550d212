"""
Structured logging with run/node context propagation.

The executor sets ``run_id`` once per run and ``node_id`` inside each node
task. Both live in a ContextVar, so every ``logger.*`` call made while a
node executes (including inside node definitions and provider clients)
carries them without passing ids around.

Two output modes:
- JSON lines for machines (``format="json"``)
- colourised single lines for a terminal (``format="human"``)
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("nodestudio_trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Extra attributes copied from ``logger.x(..., extra={...})`` into JSON entries
_EXTRA_FIELDS = ("event", "latency_ms", "node_id", "node_kind", "artifact_paths")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """JSON formatter: one object per line, trace context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colourised formatter with a ``[run:.. | node:..]`` prefix."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        prefix_parts = []
        if context.get("project_id"):
            prefix_parts.append(f"project:{context['project_id']}")
        if context.get("run_id"):
            prefix_parts.append(f"run:{context['run_id'][-8:]}")
        if context.get("node_id"):
            prefix_parts.append(f"node:{context['node_id']}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        line = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Configure the root logger once at process start.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON when LOG_FORMAT=json or
            ENV=production, human otherwise)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # httpx logs every request at INFO; route it through our handler only
    for name in ("httpx", "httpcore"):
        third_party = logging.getLogger(name)
        third_party.handlers.clear()
        third_party.propagate = True
        if level.upper() != "DEBUG":
            third_party.setLevel(logging.WARNING)


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields (run_id, node_id, project_id, ...) into the current context.

    The new mapping is bound to the current task only; sibling node tasks
    started from the same run keep their own node_id.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Reset the trace context, mainly for test isolation."""
    trace_context.set(None)
