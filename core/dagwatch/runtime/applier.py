"""
Event Applier - folds run events into an ExecutionSession.

``EventApplier.apply(session, event)`` is a reducer: it never mutates its
input and returns the new session together with a Signal telling the
driving loop what to do next:

- CONTINUE: keep reading the stream
- SUSPEND: a node paused for human review; stop reading immediately
- TERMINATE: the run concluded (dag_complete)

Known protocol limitation: node_execute fragments carry no sequence number
or de-duplication key. A retried or reordered fragment is appended as-is
and corrupts the accumulated content; nothing here tries to detect it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum

from dagwatch.config import FINAL_RESPONSE_NODE_ID, FINAL_RESPONSE_NODE_NAME
from dagwatch.errors import ProtocolError
from dagwatch.runtime.events import (
    AnswerEvent,
    DagCompleteEvent,
    DagStartEvent,
    LifecycleStatus,
    NodeExecuteEvent,
    NodeLifecycleEvent,
    RunEvent,
    TokenEvent,
    UnknownEvent,
)
from dagwatch.runtime.session import (
    DagProgress,
    ExecutionSession,
    InterventionState,
    NodeExecutionState,
    NodeStatus,
)

logger = logging.getLogger(__name__)


class SignalKind(StrEnum):
    CONTINUE = "continue"
    SUSPEND = "suspend"
    TERMINATE = "terminate"


@dataclass(frozen=True)
class Signal:
    """Control decision returned with every reduction step."""

    kind: SignalKind
    intervention: InterventionState | None = None

    @classmethod
    def suspend(cls, intervention: InterventionState) -> Signal:
        return cls(SignalKind.SUSPEND, intervention)

    @property
    def is_continue(self) -> bool:
        return self.kind == SignalKind.CONTINUE

    @property
    def is_suspend(self) -> bool:
        return self.kind == SignalKind.SUSPEND

    @property
    def is_terminate(self) -> bool:
        return self.kind == SignalKind.TERMINATE


CONTINUE = Signal(SignalKind.CONTINUE)
TERMINATE = Signal(SignalKind.TERMINATE)


class RegressionPolicy(StrEnum):
    """What to do when ``starting`` arrives for a completed/errored node."""

    OVERWRITE = "overwrite"  # node runs again (loop-back iteration)
    REJECT = "reject"  # ignore the event as a protocol error


class EventApplier:
    """
    Deterministic reducer over (ExecutionSession, RunEvent).

    Args:
        clock: Wall-clock source in milliseconds, used for start/pause times
        regression_policy: Handling of a node restarting after it finished.
            OVERWRITE (default) puts the node back to running, keeping its
            accumulated content and dropping its previous duration/result.
        strict: With REJECT, raise ProtocolError instead of logging.
    """

    def __init__(
        self,
        clock: Callable[[], float] | None = None,
        regression_policy: RegressionPolicy = RegressionPolicy.OVERWRITE,
        strict: bool = False,
    ):
        self._clock = clock or (lambda: time.time() * 1000)
        self.regression_policy = RegressionPolicy(regression_policy)
        self.strict = strict

    def apply(self, session: ExecutionSession, event: RunEvent) -> tuple[ExecutionSession, Signal]:
        """Fold one event into the session."""
        if event.conversation_id and not session.conversation_id:
            session = replace(session, conversation_id=event.conversation_id)

        if isinstance(event, DagStartEvent):
            return self._dag_start(session, event), CONTINUE
        elif isinstance(event, NodeLifecycleEvent):
            return self._lifecycle(session, event)
        elif isinstance(event, NodeExecuteEvent):
            return self._node_execute(session, event), CONTINUE
        elif isinstance(event, TokenEvent | AnswerEvent):
            return self._final_response(session, event.content), CONTINUE
        elif isinstance(event, DagCompleteEvent):
            return self._dag_complete(session, event), TERMINATE
        elif isinstance(event, UnknownEvent):
            logger.warning(f"Ignoring event of unknown type '{event.type}'")
            return session, CONTINUE

        logger.warning(f"Ignoring unsupported event object {type(event).__name__}")
        return session, CONTINUE

    def apply_all(
        self, session: ExecutionSession, events: list[RunEvent]
    ) -> tuple[ExecutionSession, Signal]:
        """Fold events until one returns a non-CONTINUE signal."""
        signal = CONTINUE
        for event in events:
            session, signal = self.apply(session, event)
            if not signal.is_continue:
                break
        return session, signal

    # === RUN BOUNDARIES ===

    def _dag_start(self, session: ExecutionSession, event: DagStartEvent) -> ExecutionSession:
        return replace(
            session,
            dag_progress=DagProgress(current=0, total=event.total_nodes, percentage=0),
            active_node_id=None,
            errored_node_id=None,
            finished=False,
            failed=False,
            cancelled=False,
            error_message=None,
        )

    def _dag_complete(self, session: ExecutionSession, event: DagCompleteEvent) -> ExecutionSession:
        """
        Close the run.

        A running final-response node is marked completed, so it counts as a
        terminal entry of ``session.nodes``; counts of executed DAG nodes go
        through ``execution_nodes()``, which leaves it out.
        """
        final = session.get_node(FINAL_RESPONSE_NODE_ID)
        if final is not None and final.status == NodeStatus.RUNNING:
            session = session.with_node(replace(final, status=NodeStatus.COMPLETED))

        failed = event.status == "failed"
        if failed:
            logger.info("Run reported failure on completion")

        return replace(
            session,
            active_node_id=None,
            errored_node_id=None,
            paused_node_id=None,
            intervention=None,
            finished=True,
            failed=failed,
        )

    # === NODE LIFECYCLE ===

    def _lifecycle(
        self, session: ExecutionSession, event: NodeLifecycleEvent
    ) -> tuple[ExecutionSession, Signal]:
        if not event.node_id:
            logger.warning(f"Ignoring node_lifecycle '{event.status}' without nodeId")
            return session, CONTINUE

        if event.status == LifecycleStatus.STARTING:
            return self._starting(session, event), CONTINUE
        if event.status == LifecycleStatus.COMPLETED:
            return self._completed(session, event), CONTINUE
        if event.status == LifecycleStatus.FAILED:
            return self._failed(session, event), CONTINUE
        if event.status == LifecycleStatus.PAUSED:
            return self._paused(session, event)

        logger.warning(
            f"Ignoring node_lifecycle with unknown status '{event.status}'",
            extra={"node_id": event.node_id},
        )
        return session, CONTINUE

    def _starting(self, session: ExecutionSession, event: NodeLifecycleEvent) -> ExecutionSession:
        node_id = event.node_id
        node = session.get_node(node_id)

        if node is None:
            node = NodeExecutionState(
                node_id=node_id,
                name=event.node_name or node_id,
                status=NodeStatus.RUNNING,
                start_time=self._clock(),
            )
            session = session.with_node(node)
        elif node.status.is_terminal:
            if self.regression_policy == RegressionPolicy.REJECT:
                message = f"Node '{node_id}' restarted after reaching '{node.status}'"
                if self.strict:
                    raise ProtocolError(message)
                logger.warning(f"{message}; event ignored", extra={"node_id": node_id})
                return session
            logger.debug(f"Node '{node_id}' re-entered after '{node.status}'")
            session = session.with_node(
                replace(
                    node,
                    status=NodeStatus.RUNNING,
                    start_time=self._clock(),
                    duration_ms=None,
                    result_summary=None,
                )
            )
        elif node.status != NodeStatus.RUNNING:
            # pending (restored) or paused (resumed) node picks up again
            session = session.with_node(replace(node, status=NodeStatus.RUNNING))

        return replace(
            session,
            active_node_id=node_id,
            errored_node_id=None,
            paused_node_id=None,
        )

    def _completed(self, session: ExecutionSession, event: NodeLifecycleEvent) -> ExecutionSession:
        node = self._ensure_node(session, event)
        session = session.with_node(
            replace(
                node,
                status=NodeStatus.COMPLETED,
                duration_ms=event.duration_ms if event.duration_ms is not None else node.duration_ms,
                result_summary=event.result if event.result is not None else node.result_summary,
            )
        )
        if event.progress is not None:
            session = replace(session, dag_progress=event.progress)
        if session.active_node_id == node.node_id:
            session = replace(session, active_node_id=None)
        return session

    def _failed(self, session: ExecutionSession, event: NodeLifecycleEvent) -> ExecutionSession:
        node = self._ensure_node(session, event)
        session = session.with_node(
            replace(
                node,
                status=NodeStatus.ERROR,
                result_summary=event.result if event.result is not None else node.result_summary,
            )
        )
        return replace(session, errored_node_id=node.node_id, active_node_id=None)

    def _paused(
        self, session: ExecutionSession, event: NodeLifecycleEvent
    ) -> tuple[ExecutionSession, Signal]:
        node = self._ensure_node(session, event)
        node = replace(node, status=NodeStatus.PAUSED)
        intervention = InterventionState(
            node_id=node.node_id,
            node_name=event.node_name or node.name,
            check_message=event.check_message or "",
            allow_modify_output=event.allow_modify_output,
            paused_at=self._clock(),
            current_output=node.content,
        )
        session = replace(
            session.with_node(node),
            paused_node_id=node.node_id,
            intervention=intervention,
            active_node_id=None,
        )
        logger.info(
            f"Node '{node.name}' paused for review",
            extra={"node_id": node.node_id},
        )
        return session, Signal.suspend(intervention)

    def _ensure_node(self, session: ExecutionSession, event: NodeLifecycleEvent) -> NodeExecutionState:
        """Existing node for the event, or a fresh one if the stream skipped 'starting'."""
        node = session.get_node(event.node_id)
        if node is not None:
            return node
        logger.debug(f"Lifecycle '{event.status}' for unseen node '{event.node_id}'")
        return NodeExecutionState(
            node_id=event.node_id,
            name=event.node_name or event.node_id,
            status=NodeStatus.RUNNING,
            start_time=self._clock(),
        )

    # === CONTENT ===

    def _node_execute(self, session: ExecutionSession, event: NodeExecuteEvent) -> ExecutionSession:
        node = session.get_node(event.node_id) if event.node_id else None

        if node is None and event.node_name:
            node = session.find_running_by_name(event.node_name)

        if node is None:
            node_id = event.node_id or self._synthetic_id(session)
            logger.debug(f"Synthesizing node '{node_id}' for unmatched output")
            node = NodeExecutionState(
                node_id=node_id,
                name=event.node_name or node_id,
                status=NodeStatus.RUNNING,
                start_time=self._clock(),
            )

        return session.with_node(node.append(event.content))

    @staticmethod
    def _synthetic_id(session: ExecutionSession) -> str:
        index = len(session.nodes) + 1
        while f"unnamed_{index}" in session.nodes:
            index += 1
        return f"unnamed_{index}"

    def _final_response(self, session: ExecutionSession, content: str) -> ExecutionSession:
        node = session.get_node(FINAL_RESPONSE_NODE_ID)
        if node is None:
            node = NodeExecutionState(
                node_id=FINAL_RESPONSE_NODE_ID,
                name=FINAL_RESPONSE_NODE_NAME,
                status=NodeStatus.RUNNING,
                start_time=self._clock(),
            )
        return session.with_node(node.append(content))
