"""
Session Manager - one ExecutionSession per conversation.

Owns the run loop and its controllers for every conversation the client
has touched, and routes start / review / cancel / switch requests to them.
Presentation code subscribes to ``manager.event_bus`` and only ever sees
immutable snapshots.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from dagwatch.errors import DagwatchError
from dagwatch.runtime.applier import EventApplier, RegressionPolicy, Signal
from dagwatch.runtime.cancellation import CancellationController
from dagwatch.runtime.event_bus import SessionEventBus, SessionEventType
from dagwatch.runtime.intervention import InterventionController
from dagwatch.runtime.restore import restore_session
from dagwatch.runtime.run_loop import RunLoop
from dagwatch.runtime.session import ExecutionSession

if TYPE_CHECKING:
    from dagwatch.client import AgentClient

logger = logging.getLogger(__name__)

PENDING_KEY_PREFIX = "pending-"


@dataclass
class _Entry:
    run_loop: RunLoop
    intervention: InterventionController
    cancellation: CancellationController


class SessionManager:
    """
    Routes user actions to the session of a conversation.

    Example:
        async with AgentClient() as client:
            manager = SessionManager(client)
            manager.event_bus.subscribe([SessionEventType.SESSION_UPDATED], render)
            signal = await manager.start_run("agent_1", "summarize the report")
            if signal.is_suspend:
                await manager.submit_decision(manager.current_id, approved=True)
    """

    def __init__(
        self,
        client: AgentClient,
        event_bus: SessionEventBus | None = None,
        regression_policy: RegressionPolicy = RegressionPolicy.OVERWRITE,
    ):
        self._client = client
        self.event_bus = event_bus or SessionEventBus()
        self._regression_policy = regression_policy
        self._entries: dict[str, _Entry] = {}
        self._current: str | None = None

    # === LOOKUP ===

    @property
    def current_id(self) -> str | None:
        """Conversation currently in view (a provisional key until the service assigns one)."""
        return self._current

    @property
    def current_session(self) -> ExecutionSession:
        if self._current is None:
            return ExecutionSession.empty()
        return self.get_session(self._current)

    def get_session(self, conversation_id: str) -> ExecutionSession:
        entry = self._find(conversation_id)
        if entry is None:
            return ExecutionSession.empty(conversation_id)
        return entry.run_loop.session

    def list_conversations(self) -> list[str]:
        return list(self._entries.keys())

    def _find(self, conversation_id: str) -> _Entry | None:
        entry = self._entries.get(conversation_id)
        if entry is not None:
            return entry
        # a run started without an id is keyed provisionally until it learns one
        for candidate in self._entries.values():
            if candidate.run_loop.session.conversation_id == conversation_id:
                return candidate
        return None

    def _require(self, conversation_id: str) -> _Entry:
        entry = self._find(conversation_id)
        if entry is None:
            raise KeyError(f"No session for conversation '{conversation_id}'")
        return entry

    def _create(
        self, key: str, session: ExecutionSession, agent_id: str | None = None
    ) -> _Entry:
        run_loop = RunLoop(
            session=session,
            applier=EventApplier(regression_policy=self._regression_policy),
            event_bus=self.event_bus,
            agent_id=agent_id,
        )
        entry = _Entry(
            run_loop=run_loop,
            intervention=InterventionController(run_loop, self._client.open_review_stream),
            cancellation=CancellationController(run_loop),
        )
        self._entries[key] = entry
        return entry

    def _drop(self, entry: _Entry | None) -> None:
        if entry is not None:
            self._entries = {k: e for k, e in self._entries.items() if e is not entry}

    def _rekey(self, key: str, entry: _Entry) -> str:
        conversation_id = entry.run_loop.session.conversation_id
        if not conversation_id or conversation_id == key:
            return key
        self._entries.pop(key, None)
        self._entries[conversation_id] = entry
        if self._current == key:
            self._current = conversation_id
        logger.debug(f"Session '{key}' is now keyed by '{conversation_id}'")
        return conversation_id

    # === ACTIONS ===

    async def start_run(
        self,
        agent_id: str,
        message: str,
        conversation_id: str | None = None,
    ) -> Signal:
        """
        Start a new run; its session replaces whatever the conversation held.

        Raises:
            RuntimeError: the conversation is still consuming a stream
            ApiError: the service refused to start the run
        """
        existing = self._find(conversation_id) if conversation_id else None
        if existing is not None and existing.run_loop.is_consuming:
            raise RuntimeError(f"Conversation '{conversation_id}' already has a run in progress")

        key = conversation_id or f"{PENDING_KEY_PREFIX}{uuid.uuid4().hex[:12]}"
        self._drop(existing)
        entry = self._create(key, ExecutionSession.empty(conversation_id or ""), agent_id)
        self._current = key

        await entry.run_loop.publish(SessionEventType.RUN_STARTED, agent_id=agent_id)
        logger.info(f"Starting run of agent '{agent_id}'")

        try:
            stream = await self._client.open_chat_stream(agent_id, message, conversation_id)
        except (httpx.HTTPError, DagwatchError) as e:
            logger.error(f"Failed to start run: {e}")
            entry.run_loop.repair(error_message=str(e))
            await entry.run_loop.publish(SessionEventType.RUN_FAILED, error=str(e))
            raise

        if entry.run_loop.session.cancelled:
            return await entry.run_loop.discard(stream)

        try:
            return await entry.run_loop.consume(stream)
        finally:
            self._rekey(key, entry)

    async def submit_decision(
        self,
        conversation_id: str,
        approved: bool,
        comments: str | None = None,
        modified_output: str | None = None,
    ) -> Signal:
        """Resume a paused conversation (see InterventionController.submit_decision)."""
        entry = self._require(conversation_id)
        return await entry.intervention.submit_decision(
            approved, comments=comments, modified_output=modified_output
        )

    async def cancel(self, conversation_id: str) -> ExecutionSession:
        """Cancel a conversation's run; cancelling an unknown conversation does nothing."""
        entry = self._find(conversation_id)
        if entry is None:
            return ExecutionSession.empty(conversation_id)
        return await entry.cancellation.cancel()

    async def switch_conversation(self, conversation_id: str | None) -> ExecutionSession:
        """
        Bring another conversation into view with an empty session.

        Runs of other conversations keep going under their own keys.
        """
        key = conversation_id or f"{PENDING_KEY_PREFIX}{uuid.uuid4().hex[:12]}"
        existing = self._find(key)
        if existing is not None and existing.run_loop.is_consuming:
            raise RuntimeError(f"Conversation '{key}' has a run in progress")
        self._drop(existing)

        entry = self._create(key, ExecutionSession.empty(conversation_id or ""))
        self._current = key
        await entry.run_loop.publish(SessionEventType.SESSION_RESET)
        return entry.run_loop.session

    async def restore(self, agent_id: str, conversation_id: str) -> ExecutionSession:
        """Rebuild a conversation's session from the service after a reload."""
        turns = await self._client.get_history(conversation_id)
        snapshot = await self._client.get_context_snapshot(agent_id, conversation_id)
        session = restore_session(conversation_id, turns, snapshot)
        self._drop(self._find(conversation_id))

        entry = self._create(conversation_id, session, agent_id)
        self._current = conversation_id
        await entry.run_loop.publish(SessionEventType.SESSION_UPDATED)
        if session.awaiting_review:
            await entry.run_loop.publish(
                SessionEventType.RUN_SUSPENDED,
                intervention=session.intervention.to_dict(),
            )
        return session
