"""
Observability module for execution-correlated structured logging.

- Automatic context propagation (flow_id, execution_id, node_id) via ContextVar
- Structured JSON logging for production
- Human-readable logging for development
"""

from flowrun.observability.logging import (
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
