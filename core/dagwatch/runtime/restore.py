"""
Session restoration after a reload.

Rebuilds an ExecutionSession from the last recorded assistant turn and,
when the service reports a paused snapshot, re-opens its review.
"""

import logging
from collections.abc import Sequence
from dataclasses import replace

from dagwatch.runtime.cancellation import repair_session
from dagwatch.runtime.session import (
    DagProgress,
    ExecutionSession,
    InterventionState,
    NodeExecutionState,
    NodeStatus,
)
from dagwatch.schemas.conversation import ConversationTurn, NodeRecord
from dagwatch.schemas.snapshot import ContextSnapshot

logger = logging.getLogger(__name__)

INTERRUPTED_RUN = "Run was interrupted before it completed"

_STATUS_ALIASES = {
    "pending": NodeStatus.PENDING,
    "running": NodeStatus.RUNNING,
    "completed": NodeStatus.COMPLETED,
    "error": NodeStatus.ERROR,
    "failed": NodeStatus.ERROR,
    "paused": NodeStatus.PAUSED,
}


def _status(value: str) -> NodeStatus:
    status = _STATUS_ALIASES.get((value or "").lower())
    if status is None:
        logger.warning(f"Unknown recorded node status '{value}', treating as pending")
        return NodeStatus.PENDING
    return status


def _node_state(record: NodeRecord) -> NodeExecutionState:
    return NodeExecutionState(
        node_id=record.node_id,
        name=record.node_name or record.node_id,
        status=_status(record.status),
        start_time=record.start_time,
        duration_ms=record.duration,
        result_summary=record.result,
        content=record.content,
    )


def restore_session(
    conversation_id: str,
    turns: Sequence[ConversationTurn | dict],
    paused: ContextSnapshot | dict | None = None,
) -> ExecutionSession:
    """
    Build the session a reloaded client should show.

    Args:
        conversation_id: Conversation being reloaded
        turns: Recorded turns, oldest first; the latest assistant turn wins
        paused: Execution snapshot, if the service has one

    Returns:
        A session that is either awaiting review (paused snapshot) or
        finished; recorded ``running`` nodes are repaired to error since
        no stream will ever complete them.
    """
    parsed = [ConversationTurn.model_validate(t) if isinstance(t, dict) else t for t in turns]
    if isinstance(paused, dict):
        paused = ContextSnapshot.model_validate(paused)

    session = ExecutionSession.empty(conversation_id)
    last_turn = next((t for t in reversed(parsed) if t.role == "assistant"), None)

    if last_turn is not None:
        nodes = {record.node_id: _node_state(record) for record in last_turn.nodes}
        progress = None
        if last_turn.dag_progress is not None:
            progress = DagProgress(
                current=last_turn.dag_progress.current,
                total=last_turn.dag_progress.total,
                percentage=last_turn.dag_progress.percentage,
            )
        session = replace(session, nodes=nodes, dag_progress=progress, failed=last_turn.error)

    info = paused.intervention_info() if paused is not None else None
    if info is not None:
        node = session.get_node(info.node_id)
        if node is None:
            node = NodeExecutionState(node_id=info.node_id, name=info.node_name or info.node_id)
        node = replace(node, status=NodeStatus.PAUSED)
        # nothing besides the paused node can still be running
        nodes = {
            node_id: replace(n, status=NodeStatus.ERROR) if n.status == NodeStatus.RUNNING else n
            for node_id, n in session.nodes.items()
        }
        session = replace(session, nodes=nodes)

        intervention = InterventionState(
            node_id=node.node_id,
            node_name=info.node_name or node.name,
            check_message=info.check_message,
            allow_modify_output=info.allow_modify_output,
            paused_at=paused.paused_at or paused.timestamp,
            current_output=node.content,
        )
        logger.info(
            f"Restored pending review for '{intervention.node_name}'",
            extra={"node_id": node.node_id},
        )
        return replace(
            session.with_node(node),
            paused_node_id=node.node_id,
            intervention=intervention,
        )

    if not session.nodes_with_status(NodeStatus.RUNNING):
        return replace(session, finished=True)
    return repair_session(session, error_message=INTERRUPTED_RUN)
