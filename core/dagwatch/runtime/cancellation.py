"""
Cancellation - deterministic repair when no more events can arrive.

Used for an explicit cancel request and for an abnormal stream end
(transport error, or the stream closing without dag_complete). After the
repair no node is left ``running``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from dagwatch.runtime.event_bus import SessionEventType
from dagwatch.runtime.session import ExecutionSession, NodeStatus

if TYPE_CHECKING:
    from dagwatch.runtime.run_loop import RunLoop

logger = logging.getLogger(__name__)


def repair_session(
    session: ExecutionSession,
    cancelled: bool = False,
    error_message: str | None = None,
) -> ExecutionSession:
    """
    Force every running node to error and close the run.

    - running nodes -> error
    - active_node_id cleared; errored_node_id set to the node that was
      active, else the latest running node (kept as-is when neither exists)
    - a pending review is dropped
    - the session is marked finished, so a second call is a no-op

    A session whose run already concluded is returned unchanged.
    """
    if session.finished:
        return session

    running = session.nodes_with_status(NodeStatus.RUNNING)
    interrupted = session.active_node_id or (running[-1].node_id if running else None)

    nodes = {
        node_id: replace(node, status=NodeStatus.ERROR)
        if node.status == NodeStatus.RUNNING
        else node
        for node_id, node in session.nodes.items()
    }

    return replace(
        session,
        nodes=nodes,
        errored_node_id=interrupted or session.errored_node_id,
        active_node_id=None,
        paused_node_id=None,
        intervention=None,
        finished=True,
        cancelled=cancelled,
        failed=session.failed or not cancelled,
        error_message=error_message if error_message is not None else session.error_message,
    )


class CancellationController:
    """
    Cancels the read loop of one session and repairs its state.

    ``cancel()`` is idempotent: cancelling twice, or after the run
    concluded on its own, changes nothing.
    """

    def __init__(self, run_loop: RunLoop):
        self._run_loop = run_loop

    async def cancel(self) -> ExecutionSession:
        """Stop consumption (if a stream is being read) and repair the session."""
        was_cancelled = self._run_loop.session.cancelled

        task = self._run_loop.current_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # The read loop repairs on its way out; this covers an idle session
        # and one whose stream is still being opened
        session = self._run_loop.repair(cancelled=True)

        if session.cancelled and not was_cancelled:
            logger.info("Run cancelled")
            await self._run_loop.publish(SessionEventType.RUN_CANCELLED)
        return session

    def cancel_threadsafe(self, loop: asyncio.AbstractEventLoop) -> None:
        """Request cancellation from a thread other than the one running ``loop``."""
        task = self._run_loop.current_task
        if task is not None:
            loop.call_soon_threadsafe(task.cancel)
