"""Schemas for data exchanged with the agent service."""

from dagwatch.schemas.conversation import ConversationTurn, NodeRecord, ProgressRecord
from dagwatch.schemas.snapshot import (
    ContextSnapshot,
    HumanInterventionInfo,
    NodeExecutionRecord,
    SnapshotStatus,
)

__all__ = [
    "ConversationTurn",
    "NodeRecord",
    "ProgressRecord",
    "ContextSnapshot",
    "HumanInterventionInfo",
    "NodeExecutionRecord",
    "SnapshotStatus",
]
