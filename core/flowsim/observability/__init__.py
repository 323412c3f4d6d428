"""
Observability module for simulation-aware structured logging.

- Automatic context propagation (flowchart, step, node) via ContextVar
- Structured JSON logging for machine consumption
- Human-readable logging for development
"""

from flowsim.observability.logging import (
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
