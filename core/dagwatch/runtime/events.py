"""Run event types decoded from the agent service stream.

Defines a discriminated union of frozen dataclasses, one per ``type`` value
the service emits. ``parse_event`` turns a decoded JSON object into one of
them; unrecognised types become ``UnknownEvent`` so newer servers do not
break older clients.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from dagwatch.runtime.session import DagProgress


class RunEventType(StrEnum):
    """Event ``type`` values understood by the applier."""

    DAG_START = "dag_start"
    DAG_COMPLETE = "dag_complete"
    NODE_LIFECYCLE = "node_lifecycle"
    NODE_EXECUTE = "node_execute"
    TOKEN = "token"
    ANSWER = "answer"


class LifecycleStatus(StrEnum):
    """``status`` values of node_lifecycle events."""

    STARTING = "starting"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


@dataclass(frozen=True)
class DagStartEvent:
    """A run has started."""

    type: Literal["dag_start"] = "dag_start"
    total_nodes: int = 0
    conversation_id: str | None = None
    timestamp: float | None = None


@dataclass(frozen=True)
class DagCompleteEvent:
    """The run concluded. ``status == "failed"`` marks a failed run."""

    type: Literal["dag_complete"] = "dag_complete"
    status: str | None = None
    conversation_id: str | None = None
    timestamp: float | None = None


@dataclass(frozen=True)
class NodeLifecycleEvent:
    """A status transition for one node."""

    type: Literal["node_lifecycle"] = "node_lifecycle"
    status: str = ""  # a LifecycleStatus value; anything else is ignored by the applier
    node_id: str | None = None
    node_name: str | None = None
    result: str | None = None
    duration_ms: int | None = None
    progress: DagProgress | None = None
    check_message: str | None = None  # paused only
    allow_modify_output: bool = False  # paused only
    conversation_id: str | None = None
    timestamp: float | None = None


@dataclass(frozen=True)
class NodeExecuteEvent:
    """A fragment of output produced by a node."""

    type: Literal["node_execute"] = "node_execute"
    node_id: str | None = None
    node_name: str | None = None
    content: str = ""
    conversation_id: str | None = None
    timestamp: float | None = None


@dataclass(frozen=True)
class TokenEvent:
    """A fragment of the final response."""

    type: Literal["token"] = "token"
    content: str = ""
    conversation_id: str | None = None
    timestamp: float | None = None


@dataclass(frozen=True)
class AnswerEvent:
    """A fragment of the final response (alternate server spelling)."""

    type: Literal["answer"] = "answer"
    content: str = ""
    conversation_id: str | None = None
    timestamp: float | None = None


@dataclass(frozen=True)
class UnknownEvent:
    """Any event whose ``type`` is not recognised. Applied as a no-op."""

    type: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    conversation_id: str | None = None
    timestamp: float | None = None


# Discriminated union of all run event types
RunEvent = (
    DagStartEvent
    | DagCompleteEvent
    | NodeLifecycleEvent
    | NodeExecuteEvent
    | TokenEvent
    | AnswerEvent
    | UnknownEvent
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    return int(value)


def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _flag(value: Any) -> bool:
    """Only a JSON true or the string "true" (any case) count as set."""
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.strip().lower() == "true"


def _content(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def parse_event(payload: Any) -> RunEvent:
    """
    Build a typed event from a decoded JSON object.

    Raises:
        ValueError: payload is not an object or a field has an unusable
            value (e.g. a non-numeric ``durationMs``).
    """
    if not isinstance(payload, dict):
        raise ValueError(f"event payload must be an object, got {type(payload).__name__}")

    event_type = payload.get("type")
    common = {
        "conversation_id": _opt_str(payload.get("conversationId")),
        "timestamp": _opt_float(payload.get("timestamp")),
    }

    if event_type == RunEventType.DAG_START:
        return DagStartEvent(total_nodes=_opt_int(payload.get("totalNodes")) or 0, **common)

    if event_type == RunEventType.DAG_COMPLETE:
        return DagCompleteEvent(status=_opt_str(payload.get("status")), **common)

    if event_type == RunEventType.NODE_LIFECYCLE:
        progress = payload.get("progress")
        if progress is not None and not isinstance(progress, dict):
            raise ValueError(f"progress must be an object, got {type(progress).__name__}")
        return NodeLifecycleEvent(
            status=_opt_str(payload.get("status")) or "",
            node_id=_opt_str(payload.get("nodeId")),
            node_name=_opt_str(payload.get("nodeName")),
            result=_opt_str(payload.get("result")),
            duration_ms=_opt_int(payload.get("durationMs")),
            progress=DagProgress.from_dict(progress) if progress else None,
            check_message=_opt_str(payload.get("checkMessage")),
            allow_modify_output=_flag(payload.get("allowModifyOutput")),
            **common,
        )

    if event_type == RunEventType.NODE_EXECUTE:
        return NodeExecuteEvent(
            node_id=_opt_str(payload.get("nodeId")),
            node_name=_opt_str(payload.get("nodeName")),
            content=_content(payload.get("content")),
            **common,
        )

    if event_type == RunEventType.TOKEN:
        return TokenEvent(content=_content(payload.get("content")), **common)

    if event_type == RunEventType.ANSWER:
        return AnswerEvent(content=_content(payload.get("content")), **common)

    return UnknownEvent(type=_opt_str(event_type) or "", payload=dict(payload), **common)
