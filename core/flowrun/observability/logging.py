"""
Execution-correlated logging.

Code anywhere under an execution just calls ``logger.info(...)``. The engine
stores ``flow_id``, ``execution_id`` and ``node_id`` in a ContextVar at run
and node boundaries, and both formatters read it back, so every line is tied
to the run that produced it without threading ids through call signatures.

    ExecutionEngine.run()          set_trace_context(flow_id=..., execution_id=...)
    ExecutionEngine._execute_node  set_trace_context(node_id=...)
    handler / collaborator code    logger.info("...")  -> carries all three

Output is JSON lines (production) or coloured text (development).
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# One copy per asyncio task: concurrent executions never see each other's ids.
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("flowrun_trace", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# ``extra=`` keys the engine attaches to its log calls
_EXTRA_FIELDS = ("event", "node_id", "node_type", "duration_ms", "status")

_LEVEL_COLORS = {
    "DEBUG": "\x1b[36m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[35m",
}
_RESET = "\x1b[0m"


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: base fields, trace context, then known extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[LEVEL   ] [flow:abcd1234 | exec:12345678 | node:send] message [event]``"""

    def format(self, record: logging.LogRecord) -> str:
        ctx = trace_context.get() or {}
        tags = []
        if ctx.get("flow_id"):
            tags.append("flow:" + ctx["flow_id"][:8])
        if ctx.get("execution_id"):
            tags.append("exec:" + ctx["execution_id"][-8:])
        if ctx.get("node_id"):
            tags.append("node:" + str(ctx["node_id"]))

        parts = [f"{_LEVEL_COLORS.get(record.levelname, '')}[{record.levelname:<8}]{_RESET}"]
        if tags:
            parts.append("[" + " | ".join(tags) + "]")
        parts.append(record.getMessage())
        event = getattr(record, "event", None)
        if event is not None:
            parts.append(f"[{event}]")

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _wants_json(format: str) -> bool:
    if format != "auto":
        return format == "json"
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return True
    return os.getenv("ENV", "development").lower() == "production"


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        level: root log level name
        format: "json", "human" or "auto" (JSON when LOG_FORMAT=json or
            ENV=production)
    """
    as_json = _wants_json(format)
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if as_json else HumanReadableFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    if as_json:
        # httpx/httpcore lines go through the JSON handler as well
        for name in ("httpx", "httpcore"):
            library_logger = logging.getLogger(name)
            library_logger.handlers.clear()
            library_logger.propagate = True


def set_trace_context(**fields: Any) -> None:
    """Merge ``fields`` into the current task's trace context."""
    trace_context.set({**(trace_context.get() or {}), **fields})


def get_trace_context() -> dict[str, Any]:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
