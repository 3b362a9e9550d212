"""Tests for structured log formatting and trace context propagation."""

import asyncio
import json
import logging

import pytest

from nodestudio.observability import clear_trace_context, get_trace_context, set_trace_context
from nodestudio.observability.logging import HumanReadableFormatter, StructuredFormatter, strip_ansi_codes


@pytest.fixture(autouse=True)
def clean_context():
    clear_trace_context()
    yield
    clear_trace_context()


def make_record(message: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("nodestudio.test", level, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_trace_context_is_merged_into_entries(self):
        set_trace_context(run_id="run_abc", node_id="gen-1")

        entry = json.loads(StructuredFormatter().format(make_record("\x1b[32mdone\x1b[0m")))

        assert entry["message"] == "done"
        assert entry["level"] == "info"
        assert entry["run_id"] == "run_abc"
        assert entry["node_id"] == "gen-1"

    def test_known_extras_are_included(self):
        record = make_record("reconcile failed", logging.ERROR, artifact_paths=["a.png"], unrelated="x")

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["artifact_paths"] == ["a.png"]
        assert "unrelated" not in entry


class TestHumanReadableFormatter:
    def test_prefix_shows_run_tail_and_node(self):
        set_trace_context(project_id="proj_1", run_id="run_0123456789", node_id="tpl-1")

        line = strip_ansi_codes(HumanReadableFormatter().format(make_record("started", event="node.started")))

        assert line == "[INFO    ] [project:proj_1 | run:23456789 | node:tpl-1] started [node.started]"

    def test_no_prefix_without_context(self):
        line = strip_ansi_codes(HumanReadableFormatter().format(make_record("hello", logging.WARNING)))

        assert line == "[WARNING ] hello"


@pytest.mark.asyncio
async def test_node_tasks_keep_their_own_context():
    set_trace_context(run_id="run_1")

    async def node_task(node_id: str) -> dict:
        set_trace_context(node_id=node_id)
        await asyncio.sleep(0)
        return get_trace_context()

    a, b = await asyncio.gather(node_task("a"), node_task("b"))

    assert a == {"run_id": "run_1", "node_id": "a"}
    assert b == {"run_id": "run_1", "node_id": "b"}
    assert get_trace_context() == {"run_id": "run_1"}
