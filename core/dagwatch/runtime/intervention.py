"""
Human intervention - the pause / approve / reject protocol.

When the applier suspends a run, the read loop has already stopped
reading. ``submit_decision()`` sends the reviewer's verdict and folds the
stream the service opens in reply into the *same* session.

The controller gives "rejected" no meaning of its own: it unblocks
consumption and lets the new stream's events decide what happens next.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

import httpx

from dagwatch.errors import DagwatchError, ReviewSubmissionError
from dagwatch.runtime.applier import Signal
from dagwatch.runtime.event_bus import SessionEventType
from dagwatch.runtime.run_loop import RunLoop

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewDecision:
    """The reviewer's verdict on a paused node."""

    conversation_id: str
    node_id: str
    approved: bool
    comments: str | None = None
    modified_output: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Request body of the resume call."""
        payload: dict[str, Any] = {
            "conversationId": self.conversation_id,
            "nodeId": self.node_id,
            "approved": self.approved,
        }
        if self.comments:
            payload["comments"] = self.comments
        if self.modified_output is not None:
            payload["modifiedOutput"] = self.modified_output
        return payload


# Sends the decision and returns the new event stream; raises if the
# service refuses it.
ResumeOpener = Callable[[ReviewDecision], Awaitable[AsyncIterable[bytes]]]


class InterventionController:
    """
    Resumes a suspended session once a human has decided.

    Example:
        controller = InterventionController(run_loop, client.open_review_stream)
        signal = await controller.submit_decision(approved=True)
    """

    def __init__(self, run_loop: RunLoop, open_resume_stream: ResumeOpener):
        self._run_loop = run_loop
        self._open_resume_stream = open_resume_stream
        self._submitting = False

    @property
    def awaiting_review(self) -> bool:
        return self._run_loop.session.awaiting_review

    async def submit_decision(
        self,
        approved: bool,
        comments: str | None = None,
        modified_output: str | None = None,
    ) -> Signal:
        """
        Deliver a decision and consume the resumed stream.

        Args:
            approved: Approve (True) or reject (False) the paused node
            comments: Optional reviewer note
            modified_output: Replacement output; only sent when the paused
                node allows output modification

        Returns:
            The signal that ended the resumed stream

        Raises:
            RuntimeError: the session is not awaiting review, or a decision
                is already being submitted
            ReviewSubmissionError: the service could not be reached or refused
                the decision; the session stays paused and the call may be
                retried
        """
        session = self._run_loop.session
        intervention = session.intervention
        if intervention is None:
            raise RuntimeError("session is not awaiting review")
        if self._submitting:
            raise RuntimeError("a review decision is already being submitted")

        if modified_output is not None and not intervention.allow_modify_output:
            logger.warning(
                "Paused node does not allow output modification; dropping modified output",
                extra={"node_id": intervention.node_id},
            )
            modified_output = None

        decision = ReviewDecision(
            conversation_id=session.conversation_id,
            node_id=intervention.node_id,
            approved=approved,
            comments=comments,
            modified_output=modified_output,
        )

        self._submitting = True
        try:
            try:
                stream = await self._open_resume_stream(decision)
            except (httpx.HTTPError, DagwatchError) as e:
                logger.error(
                    f"Review submission failed: {e}",
                    extra={"node_id": intervention.node_id},
                )
                raise ReviewSubmissionError(f"Review submission failed: {e}") from e

            if self._run_loop.session.cancelled:
                return await self._run_loop.discard(stream)

            logger.info(
                f"Review {'approved' if approved else 'rejected'} for '{intervention.node_name}'",
                extra={"node_id": intervention.node_id},
            )
            self._run_loop.update(
                replace(self._run_loop.session, paused_node_id=None, intervention=None)
            )
            await self._run_loop.publish(SessionEventType.RUN_RESUMED, approved=approved)

            return await self._run_loop.consume(stream)
        finally:
            self._submitting = False
