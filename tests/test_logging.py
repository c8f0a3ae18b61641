"""Tests for structured logging and run context propagation."""

import asyncio
import json
import logging

import pytest

from agentrun.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    get_trace_context,
    set_trace_context,
    strip_ansi_codes,
)


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="agentrun.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_includes_context_and_extras(self):
        set_trace_context(run_id="run_1", session_id="s1", lane="assistant")
        entry = json.loads(
            StructuredFormatter().format(_record(event="tool_completed", tool_name="search", step_index=2))
        )
        assert entry["level"] == "info"
        assert entry["logger"] == "agentrun.test"
        assert entry["message"] == "hello"
        assert entry["run_id"] == "run_1"
        assert entry["lane"] == "assistant"
        assert entry["event"] == "tool_completed"
        assert entry["tool_name"] == "search"
        assert entry["step_index"] == 2
        assert "latency_ms" not in entry

    def test_strips_ansi(self):
        entry = json.loads(StructuredFormatter().format(_record("\033[31mred\033[0m")))
        assert entry["message"] == "red"

    def test_strip_ansi_codes(self):
        assert strip_ansi_codes("\x1b[1;32mok\x1b[0m") == "ok"


class TestHumanReadableFormatter:
    def test_prefix_and_event(self):
        set_trace_context(run_id="run_abcdefgh_xyz", lane="workflow")
        line = HumanReadableFormatter().format(_record("Run started", event="run_started"))
        assert "[run:run_abcd | lane:workflow]" in line
        assert line.endswith("Run started [run_started]")

    def test_no_context(self):
        line = HumanReadableFormatter().format(_record("plain"))
        assert "[run:" not in line
        assert line.endswith("plain")


class TestTraceContext:
    def test_merge(self):
        set_trace_context(run_id="r1")
        set_trace_context(lane="builder")
        assert get_trace_context() == {"run_id": "r1", "lane": "builder"}

    @pytest.mark.asyncio
    async def test_tasks_do_not_share_context(self):
        async def run(run_id: str) -> dict:
            set_trace_context(run_id=run_id)
            await asyncio.sleep(0)
            return get_trace_context()

        first, second = await asyncio.gather(run("a"), run("b"))
        assert first == {"run_id": "a"}
        assert second == {"run_id": "b"}
