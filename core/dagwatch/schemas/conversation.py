"""
Conversation history schema - prior turns as recorded by the agent service.

Used to pre-populate an ExecutionSession when a conversation is reloaded.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True, "extra": "allow"}


class ProgressRecord(BaseModel):
    current: int = 0
    total: int = 0
    percentage: float = 0

    model_config = _CAMEL


class NodeRecord(BaseModel):
    """One node's recorded execution within a turn."""

    node_id: str
    node_name: str = ""
    status: str = "pending"  # case-insensitive: pending/running/completed/error/paused
    content: str = ""
    start_time: float = 0
    duration: int | None = None
    result: str | None = None

    model_config = _CAMEL

    @field_validator("content", mode="before")
    @classmethod
    def _none_content(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("result", mode="before")
    @classmethod
    def _stringify_result(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class ConversationTurn(BaseModel):
    """A user or assistant turn with its recorded per-node states."""

    role: str = "assistant"  # "user" | "assistant"
    content: str | None = None
    nodes: list[NodeRecord] = Field(default_factory=list)
    timestamp: float = 0
    error: bool = False
    dag_progress: ProgressRecord | None = None

    model_config = _CAMEL
