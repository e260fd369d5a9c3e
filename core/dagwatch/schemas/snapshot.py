"""
Execution context snapshot schema.

The service keeps a snapshot of a paused execution so a reloaded client
can re-open the pending review. Older services only fill the flat legacy
fields (pausedNodeName, checkMessage, ...); ``intervention_info()`` reads
either shape.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True, "extra": "allow"}


class SnapshotStatus(StrEnum):
    COMPLETED = "COMPLETED"
    PAUSED = "PAUSED"
    RUNNING = "RUNNING"
    ERROR = "ERROR"


class HumanInterventionInfo(BaseModel):
    node_id: str
    node_name: str = ""
    node_type: str = ""
    check_message: str = ""
    allow_modify_output: bool = False

    model_config = _CAMEL


class NodeExecutionRecord(BaseModel):
    node_id: str
    node_name: str = ""
    node_type: str = ""
    status: str = "PENDING"
    start_time: float = 0
    end_time: float | None = None
    duration: int | None = None
    input: Any = None
    output: Any = None
    error: str | None = None

    model_config = _CAMEL


class ContextSnapshot(BaseModel):
    """Snapshot of one conversation's execution context."""

    conversation_id: str
    last_node_id: str = ""
    timestamp: float = 0
    status: SnapshotStatus = SnapshotStatus.RUNNING

    state_data: dict[str, Any] = Field(default_factory=dict)
    human_intervention: HumanInterventionInfo | None = None
    execution_history: list[NodeExecutionRecord] = Field(default_factory=list)
    editable_fields: list[dict[str, Any]] = Field(default_factory=list)

    # Legacy flat fields
    paused_node_name: str | None = None
    paused_at: float | None = None
    check_message: str | None = None
    allow_modify_output: bool | None = None

    model_config = _CAMEL

    @property
    def is_paused(self) -> bool:
        return self.status == SnapshotStatus.PAUSED

    def intervention_info(self) -> HumanInterventionInfo | None:
        """Pending review details, from the structured or the legacy fields."""
        if not self.is_paused:
            return None
        if self.human_intervention is not None:
            return self.human_intervention
        if not self.last_node_id:
            return None
        return HumanInterventionInfo(
            node_id=self.last_node_id,
            node_name=self.paused_node_name or self.last_node_id,
            check_message=self.check_message or "",
            allow_modify_output=bool(self.allow_modify_output),
        )
