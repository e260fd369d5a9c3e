"""
Execution session state - the reconstructed view of one conversation's run.

All state objects are frozen. The EventApplier produces a new
ExecutionSession for every event it folds in, so a snapshot handed to a
subscriber never changes underneath it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from dagwatch.config import FINAL_RESPONSE_NODE_ID


class NodeStatus(StrEnum):
    """Execution status of one node."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.ERROR)


@dataclass(frozen=True)
class DagProgress:
    """Aggregate run progress, as reported by the stream."""

    current: int = 0
    total: int = 0
    percentage: float = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DagProgress:
        return cls(
            current=int(data.get("current") or 0),
            total=int(data.get("total") or 0),
            percentage=float(data.get("percentage") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"current": self.current, "total": self.total, "percentage": self.percentage}


@dataclass(frozen=True)
class NodeExecutionState:
    """Live state of one execution node."""

    node_id: str
    name: str
    status: NodeStatus = NodeStatus.RUNNING
    start_time: float = 0.0
    duration_ms: int | None = None
    result_summary: str | None = None
    content: str = ""  # append-only

    def append(self, content: str) -> NodeExecutionState:
        if not content:
            return self
        return replace(self, content=self.content + content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeName": self.name,
            "status": self.status.value,
            "startTime": self.start_time,
            "duration": self.duration_ms,
            "result": self.result_summary,
            "content": self.content,
        }


@dataclass(frozen=True)
class InterventionState:
    """A pending human review. Exists only while the session is suspended."""

    node_id: str
    node_name: str
    check_message: str = ""
    allow_modify_output: bool = False
    paused_at: float = 0.0
    current_output: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "checkMessage": self.check_message,
            "allowModifyOutput": self.allow_modify_output,
            "pausedAt": self.paused_at,
            "currentOutput": self.current_output,
        }


@dataclass(frozen=True)
class ExecutionSession:
    """
    Reconstructed execution state for one conversation's current run.

    ``nodes`` keeps insertion order for display. The dict is never mutated
    after construction; every change goes through ``with_node`` or
    ``dataclasses.replace`` and yields a new session.
    """

    conversation_id: str = ""
    nodes: dict[str, NodeExecutionState] = field(default_factory=dict)
    dag_progress: DagProgress | None = None
    active_node_id: str | None = None
    errored_node_id: str | None = None
    paused_node_id: str | None = None
    intervention: InterventionState | None = None

    # Run outcome
    finished: bool = False  # the owning turn is over (dag_complete or repair)
    failed: bool = False
    cancelled: bool = False
    error_message: str | None = None

    @classmethod
    def empty(cls, conversation_id: str = "") -> ExecutionSession:
        return cls(conversation_id=conversation_id)

    # === DERIVED VIEWS ===

    @property
    def awaiting_review(self) -> bool:
        return self.intervention is not None

    @property
    def is_running(self) -> bool:
        return not self.finished and not self.awaiting_review

    @property
    def final_response(self) -> str:
        node = self.nodes.get(FINAL_RESPONSE_NODE_ID)
        return node.content if node else ""

    def get_node(self, node_id: str) -> NodeExecutionState | None:
        return self.nodes.get(node_id)

    def execution_nodes(self) -> list[NodeExecutionState]:
        """Nodes reported by the run, excluding the synthetic final-response node."""
        return [n for n in self.nodes.values() if n.node_id != FINAL_RESPONSE_NODE_ID]

    def nodes_with_status(self, status: NodeStatus) -> list[NodeExecutionState]:
        return [n for n in self.nodes.values() if n.status == status]

    def completed_node_ids(self) -> list[str]:
        return [n.node_id for n in self.execution_nodes() if n.status == NodeStatus.COMPLETED]

    def find_running_by_name(self, name: str) -> NodeExecutionState | None:
        """Most recently inserted running node with this name."""
        for node in reversed(list(self.nodes.values())):
            if node.status == NodeStatus.RUNNING and node.name == name:
                return node
        return None

    # === COPY HELPERS ===

    def with_node(self, node: NodeExecutionState) -> ExecutionSession:
        """New session with ``node`` inserted or replaced (order preserved)."""
        nodes = dict(self.nodes)
        nodes[node.node_id] = node
        return replace(self, nodes=nodes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "conversationId": self.conversation_id,
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "dagProgress": self.dag_progress.to_dict() if self.dag_progress else None,
            "activeNodeId": self.active_node_id,
            "erroredNodeId": self.errored_node_id,
            "pausedNodeId": self.paused_node_id,
            "intervention": self.intervention.to_dict() if self.intervention else None,
            "finished": self.finished,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "errorMessage": self.error_message,
        }
