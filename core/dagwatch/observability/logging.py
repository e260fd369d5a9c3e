"""
Structured logging with automatic run context propagation.

Key Features:
- Standard logger.info() calls pick up the current run context
- ContextVar-based propagation: async-safe across the read loop
- Dual output modes: JSON for production, human-readable for development

Architecture:
    RunLoop.consume() → sets conversation_id (and agent_id) once
        ↓ (automatic propagation via ContextVar)
    StreamEventDecoder / EventApplier → logger.warning("...")
        ↓
    Every record carries the conversation it belongs to
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

run_context: ContextVar[dict[str, Any] | None] = ContextVar("run_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Record attributes copied into JSON output when present
_EXTRA_FIELDS = ("event", "node_id", "event_type", "frame")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable entries with the standard fields
    (timestamp, level, logger, message), the run context and any of
    the known extra fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = run_context.get() or {}

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized formatter for local use, prefixed with the run context."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = run_context.get() or {}
        conversation_id = context.get("conversation_id", "")
        agent_id = context.get("agent_id", "")

        prefix_parts = []
        if conversation_id:
            prefix_parts.append(f"conv:{conversation_id[-8:]}")
        if agent_id:
            prefix_parts.append(f"agent:{agent_id}")
        node_id = getattr(record, "node_id", None)
        if node_id:
            prefix_parts.append(f"node:{node_id}")

        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"
        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application. Call once at startup (the CLI does).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter = StructuredFormatter() if format == "json" else HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # httpx logs every request at INFO; keep it quiet unless debugging
    if level.upper() != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def set_run_context(**kwargs: Any) -> None:
    """
    Add fields (conversation_id, agent_id, ...) to the current run context.

    The context is stored in a ContextVar, so it follows the awaiting task
    and does not leak between concurrently consumed sessions.
    """
    current = run_context.get() or {}
    run_context.set({**current, **kwargs})


def get_run_context() -> dict:
    """Copy of the current run context (empty dict if unset)."""
    return (run_context.get() or {}).copy()


def clear_run_context() -> None:
    """Drop the run context (used between tests)."""
    run_context.set(None)
