"""
Observability module: structured logging with run context.

- Run context propagation via ContextVar
- Structured JSON logging for production
- Human-readable logging for development
"""

from dagwatch.observability.logging import (
    clear_run_context,
    configure_logging,
    get_run_context,
    set_run_context,
)

__all__ = [
    "configure_logging",
    "get_run_context",
    "set_run_context",
    "clear_run_context",
]
