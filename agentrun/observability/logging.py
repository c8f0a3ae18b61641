"""
Run-correlated logging.

The StepDriver stores ``run_id``, ``session_id`` and ``lane`` in a
ContextVar when a run starts. Both formatters read it on every record, so a
plain ``logger.info(...)`` anywhere under the run (the loop, the tool
registry, a tool body) is tagged without passing ids around. Each asyncio
task holds its own copy, so concurrent runs never mix.

Two renderings:
    json   one object per line, for log shippers
    human  colourised level plus a short ``[run:… | session:… | lane:…]`` tag
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

# Record attributes (set through ``extra=``) promoted into JSON output
EXTRA_FIELDS = ("event", "tool_name", "step_index", "tokens_used", "latency_ms", "model")

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

# (context key, tag label, slice applied to the value)
_TAG_PARTS = (
    ("run_id", "run", slice(None, 8)),
    ("session_id", "session", slice(-8, None)),
    ("lane", "lane", slice(None)),
)

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"

# Client libraries whose own handlers would bypass the JSON formatter
_CHATTY_LOGGERS = ("LiteLLM", "httpcore", "httpx", "aiohttp.access")


def strip_ansi_codes(text: str) -> str:
    return _ANSI_RE.sub("", text)


class StructuredFormatter(logging.Formatter):
    """Renders a record as a single JSON object.

    Keys: ``timestamp``, ``level``, ``logger``, ``message``, the current run
    context, any of :data:`EXTRA_FIELDS` present on the record, and
    ``exception`` when exc_info is set. ANSI colour codes are removed from
    every string value.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        payload.update(self._extras(record))
        if record.exc_info:
            payload["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(payload, default=str)

    @staticmethod
    def _extras(record: logging.LogRecord) -> dict[str, Any]:
        extras = {}
        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                extras[name] = strip_ansi_codes(value) if isinstance(value, str) else value
        return extras


class HumanReadableFormatter(logging.Formatter):
    """``[LEVEL   ] [run:… | lane:…] message [event]`` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelno, "")
        parts = [f"{color}[{record.levelname:<8}]{_RESET}"]

        tag = self._run_tag(trace_context.get() or {})
        if tag:
            parts.append(tag)
        parts.append(record.getMessage())

        line = " ".join(parts)
        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def _run_tag(context: dict[str, Any]) -> str:
        labels = [
            f"{label}:{str(context[key])[cut]}"
            for key, label, cut in _TAG_PARTS
            if context.get(key)
        ]
        return f"[{' | '.join(labels)}]" if labels else ""


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    if os.getenv("ENV", "development").lower() == "production":
        return "json"
    return "human"


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single root handler. Call once at startup.

    Args:
        level: Root log level name
        format: ``"json"``, ``"human"`` or ``"auto"`` (JSON when
            LOG_FORMAT=json or ENV=production)
    """
    resolved = _resolve_format(format)

    handler = logging.StreamHandler()
    if resolved == "json":
        handler.setFormatter(StructuredFormatter())
        _quiet_third_party_output()
    else:
        handler.setFormatter(HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if resolved == "json":
        for name in _CHATTY_LOGGERS:
            library_logger = logging.getLogger(name)
            library_logger.handlers.clear()
            library_logger.propagate = True


def _quiet_third_party_output() -> None:
    """Stop colour codes and litellm's banner from reaching JSON output."""
    os.environ["NO_COLOR"] = "1"
    os.environ["FORCE_COLOR"] = "0"

    import litellm

    litellm.suppress_debug_info = True


def set_trace_context(**kwargs: Any) -> None:
    """Merge fields into the current task's run context."""
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict[str, Any]:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
