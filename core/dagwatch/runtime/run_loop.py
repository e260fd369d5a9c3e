"""
Run Loop - the single consumer driving one ExecutionSession.

Each call to ``consume()`` reads one event stream chunk by chunk:

    chunk -> StreamEventDecoder -> RunEvent -> EventApplier -> new session

and publishes a snapshot after every applied event. The loop stops reading
as soon as the applier returns SUSPEND or TERMINATE. If the stream ends
(or breaks) without a dag_complete, the session is repaired the same way
an explicit cancel would repair it.

All state swaps happen under a session-scoped lock that is never held
across an ``await``; the loop itself is the only writer, apart from the
cancellation repair.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterable
from dataclasses import replace

import httpx

from dagwatch.observability import set_run_context
from dagwatch.runtime.applier import CONTINUE, TERMINATE, EventApplier, Signal
from dagwatch.runtime.cancellation import repair_session
from dagwatch.runtime.decoder import StreamEventDecoder
from dagwatch.runtime.event_bus import SessionEventBus, SessionEventType
from dagwatch.runtime.events import RunEvent
from dagwatch.runtime.session import ExecutionSession

logger = logging.getLogger(__name__)

STREAM_ENDED_EARLY = "Stream closed before the run completed"


class RunLoop:
    """
    Owner of one session's state and its read loop.

    Example:
        loop = RunLoop(ExecutionSession.empty("conv_1"), event_bus=bus)
        signal = await loop.consume(client_stream)
        if signal.is_suspend:
            ...  # hand over to InterventionController
    """

    def __init__(
        self,
        session: ExecutionSession | None = None,
        applier: EventApplier | None = None,
        event_bus: SessionEventBus | None = None,
        agent_id: str | None = None,
    ):
        self._session = session or ExecutionSession.empty()
        self.applier = applier or EventApplier()
        self._event_bus = event_bus
        self.agent_id = agent_id

        self._state_lock = threading.Lock()
        self._task: asyncio.Task | None = None
        self.last_signal: Signal | None = None

    @property
    def session(self) -> ExecutionSession:
        """Current immutable snapshot."""
        return self._session

    @property
    def current_task(self) -> asyncio.Task | None:
        """Task reading the current stream, if any."""
        return self._task

    @property
    def is_consuming(self) -> bool:
        return self._task is not None and not self._task.done()

    # === STATE ===

    def update(self, session: ExecutionSession) -> ExecutionSession:
        """Replace the session snapshot (used by the controllers)."""
        with self._state_lock:
            self._session = session
        return session

    def repair(self, cancelled: bool = False, error_message: str | None = None) -> ExecutionSession:
        """Run the cancellation repair against the current snapshot."""
        with self._state_lock:
            self._session = repair_session(
                self._session, cancelled=cancelled, error_message=error_message
            )
            return self._session

    def _apply_events(self, events: list[RunEvent]) -> tuple[list[ExecutionSession], Signal]:
        """Fold events under the lock; stop at the first non-CONTINUE signal."""
        snapshots: list[ExecutionSession] = []
        signal = CONTINUE
        with self._state_lock:
            for event in events:
                self._session, signal = self.applier.apply(self._session, event)
                snapshots.append(self._session)
                if not signal.is_continue:
                    break
        return snapshots, signal

    async def publish(self, event_type: SessionEventType, **data) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(event_type, self._session, **data)

    # === READ LOOP ===

    async def consume(self, chunks: AsyncIterable[bytes | str]) -> Signal:
        """
        Read one stream into the session.

        The stream is read by a task owned by this loop, so a cancel
        request stops the read without touching the caller's task.

        Returns:
            SUSPEND when a node paused for review, TERMINATE otherwise
            (dag_complete, abnormal end, transport failure, or cancel).

        Raises:
            RuntimeError: another stream is already being consumed
            asyncio.CancelledError: the calling task was cancelled; the
                session has been repaired before the error propagates
        """
        if self.is_consuming:
            raise RuntimeError("session is already consuming a stream")

        if self._session.cancelled:
            # cancelled while the stream was being opened
            return await self.discard(chunks)

        if self._session.finished:
            # a follow-up stream in the same session starts a new turn
            self.update(replace(self._session, finished=False))

        set_run_context(conversation_id=self._session.conversation_id, agent_id=self.agent_id)
        self._task = asyncio.create_task(self._read(chunks))
        try:
            signal = await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            signal = TERMINATE
        finally:
            self._task = None
            if self._session.conversation_id:
                set_run_context(conversation_id=self._session.conversation_id)

        self.last_signal = signal
        return signal

    async def discard(self, chunks: AsyncIterable[bytes | str]) -> Signal:
        """Close a stream unread because the session was cancelled."""
        logger.info("Session was cancelled, discarding stream")
        await self._close(chunks)
        self.last_signal = TERMINATE
        return TERMINATE

    async def _read(self, chunks: AsyncIterable[bytes | str]) -> Signal:
        decoder = StreamEventDecoder()
        signal = CONTINUE
        try:
            async for chunk in chunks:
                signal = await self._feed(decoder.feed(chunk))
                if not signal.is_continue or decoder.done:
                    break
            else:
                signal = await self._feed(decoder.close())

        except asyncio.CancelledError:
            logger.info("Read loop cancelled, repairing session")
            self.repair(cancelled=True)
            raise

        except (httpx.HTTPError, OSError) as e:
            logger.error(f"Stream transport failed: {e}")
            self.repair(error_message=str(e) or type(e).__name__)
            await self.publish(SessionEventType.RUN_FAILED, error=str(e))
            signal = TERMINATE

        else:
            signal = await self._finish(signal)

        finally:
            await self._close(chunks)

        return signal

    async def _feed(self, events: list[RunEvent]) -> Signal:
        if not events:
            return CONTINUE
        snapshots, signal = self._apply_events(events)
        if snapshots and self._session.conversation_id:
            set_run_context(conversation_id=self._session.conversation_id)
        if self._event_bus is not None:
            for snapshot in snapshots:
                await self._event_bus.emit(SessionEventType.SESSION_UPDATED, snapshot)
        return signal

    async def _finish(self, signal: Signal) -> Signal:
        if signal.is_suspend:
            logger.info("Run suspended, awaiting review")
            await self.publish(
                SessionEventType.RUN_SUSPENDED,
                intervention=signal.intervention.to_dict() if signal.intervention else None,
            )
            return signal

        if signal.is_terminate:
            if self._session.failed:
                await self.publish(SessionEventType.RUN_FAILED)
            else:
                await self.publish(SessionEventType.RUN_COMPLETED)
            return signal

        logger.warning(STREAM_ENDED_EARLY)
        self.repair(error_message=STREAM_ENDED_EARLY)
        await self.publish(SessionEventType.RUN_FAILED, error=STREAM_ENDED_EARLY)
        return TERMINATE

    @staticmethod
    async def _close(chunks: AsyncIterable[bytes | str]) -> None:
        """Release the underlying stream so no further reads are issued."""
        aclose = getattr(chunks, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except (httpx.HTTPError, OSError) as e:
            logger.debug(f"Error while closing stream: {e}")
