"""Tests for RunLoop: reading a stream into a session and halting on signals."""

import asyncio
import json

import httpx
import pytest

from dagwatch.observability import clear_run_context, get_run_context
from dagwatch.runtime.cancellation import CancellationController
from dagwatch.runtime.event_bus import SessionEventBus, SessionEventType
from dagwatch.runtime.run_loop import STREAM_ENDED_EARLY, RunLoop
from dagwatch.runtime.session import ExecutionSession, NodeStatus


def frame(payload: dict | str) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


def lifecycle(status: str, node_id: str, **extra) -> bytes:
    return frame({"type": "node_lifecycle", "status": status, "nodeId": node_id, **extra})


class RecordingStream:
    """Async chunk source that records how far it was read and whether it was closed."""

    def __init__(self, chunks, error: Exception | None = None, hang: bool = False):
        self._chunks = list(chunks)
        self._error = error
        self._hang = hang
        self.reads = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self.reads < len(self._chunks):
            chunk = self._chunks[self.reads]
            self.reads += 1
            return chunk
        if self._error is not None:
            raise self._error
        if self._hang:
            await asyncio.Event().wait()
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_context():
    clear_run_context()
    yield
    clear_run_context()


class TestConsume:
    @pytest.mark.asyncio
    async def test_complete_run(self):
        stream = RecordingStream(
            [
                frame({"type": "dag_start", "totalNodes": 1, "conversationId": "conv_1"}),
                lifecycle("starting", "n1"),
                lifecycle("completed", "n1", durationMs=12),
                frame({"type": "token", "content": "hi"}),
                frame({"type": "dag_complete"}),
            ]
        )
        loop = RunLoop()
        signal = await loop.consume(stream)

        assert signal.is_terminate
        assert loop.last_signal == signal
        assert loop.session.conversation_id == "conv_1"
        assert loop.session.get_node("n1").status == NodeStatus.COMPLETED
        assert loop.session.final_response == "hi"
        assert loop.session.finished
        assert not loop.session.failed
        assert stream.closed
        assert not loop.is_consuming

    @pytest.mark.asyncio
    async def test_pause_halts_reading(self):
        stream = RecordingStream(
            [
                lifecycle("starting", "n2"),
                lifecycle("paused", "n2", checkMessage="Please review"),
                lifecycle("completed", "n2"),
                frame({"type": "dag_complete"}),
            ]
        )
        loop = RunLoop(ExecutionSession.empty("conv_1"))
        signal = await loop.consume(stream)

        assert signal.is_suspend
        assert stream.reads == 2
        assert stream.closed
        assert loop.session.paused_node_id == "n2"
        assert loop.session.get_node("n2").status == NodeStatus.PAUSED
        assert not loop.session.finished

    @pytest.mark.asyncio
    async def test_pause_mid_chunk_drops_rest_of_chunk(self):
        body = lifecycle("starting", "n2") + lifecycle("paused", "n2") + lifecycle("starting", "n3")
        loop = RunLoop()
        signal = await loop.consume(RecordingStream([body]))

        assert signal.is_suspend
        assert loop.session.get_node("n3") is None

    @pytest.mark.asyncio
    async def test_early_end_repairs_session(self):
        stream = RecordingStream([lifecycle("starting", "n1")])
        loop = RunLoop()
        signal = await loop.consume(stream)

        assert signal.is_terminate
        assert loop.session.get_node("n1").status == NodeStatus.ERROR
        assert loop.session.errored_node_id == "n1"
        assert loop.session.active_node_id is None
        assert loop.session.failed
        assert loop.session.error_message == STREAM_ENDED_EARLY

    @pytest.mark.asyncio
    async def test_sentinel_without_dag_complete_is_early_end(self):
        stream = RecordingStream([lifecycle("starting", "n1"), frame("[DONE]"), frame("ignored")])
        loop = RunLoop()
        await loop.consume(stream)

        assert stream.reads == 2
        assert loop.session.get_node("n1").status == NodeStatus.ERROR

    @pytest.mark.asyncio
    async def test_trailing_frame_is_flushed(self):
        stream = RecordingStream([lifecycle("starting", "n1"), b'data: {"type": "dag_complete"}'])
        loop = RunLoop()
        signal = await loop.consume(stream)

        assert signal.is_terminate
        assert not loop.session.failed

    @pytest.mark.asyncio
    async def test_transport_error_repairs_and_flags_failure(self):
        error = httpx.ReadError("connection reset")
        stream = RecordingStream([lifecycle("starting", "n1")], error=error)
        loop = RunLoop()
        signal = await loop.consume(stream)

        assert signal.is_terminate
        assert loop.session.failed
        assert loop.session.error_message == "connection reset"
        assert loop.session.get_node("n1").status == NodeStatus.ERROR
        assert stream.closed

    @pytest.mark.asyncio
    async def test_dag_complete_failed(self):
        loop = RunLoop()
        await loop.consume(RecordingStream([frame({"type": "dag_complete", "status": "failed"})]))
        assert loop.session.failed

    @pytest.mark.asyncio
    async def test_follow_up_stream_starts_new_turn(self):
        loop = RunLoop()
        await loop.consume(RecordingStream([frame({"type": "dag_complete"})]))
        assert loop.session.finished

        await loop.consume(RecordingStream([lifecycle("starting", "n1")]))
        assert loop.session.finished
        assert loop.session.get_node("n1").status == NodeStatus.ERROR

    @pytest.mark.asyncio
    async def test_concurrent_consume_rejected(self):
        loop = RunLoop()
        hanging = RecordingStream([lifecycle("starting", "n1")], hang=True)
        task = asyncio.create_task(loop.consume(hanging))
        await asyncio.sleep(0)

        with pytest.raises(RuntimeError, match="already consuming"):
            await loop.consume(RecordingStream([]))

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancelled_task_repairs_before_propagating(self):
        loop = RunLoop()
        hanging = RecordingStream([lifecycle("starting", "n1")], hang=True)
        task = asyncio.create_task(loop.consume(hanging))
        while hanging.reads < 1:
            await asyncio.sleep(0)
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert loop.session.cancelled
        assert loop.session.get_node("n1").status == NodeStatus.ERROR
        assert hanging.closed

    @pytest.mark.asyncio
    async def test_cancelled_session_discards_stream(self):
        bus = SessionEventBus()
        loop = RunLoop(ExecutionSession.empty("conv_1"), event_bus=bus)
        await CancellationController(loop).cancel()

        stream = RecordingStream([lifecycle("starting", "n1"), frame({"type": "dag_complete"})])
        signal = await loop.consume(stream)

        assert signal.is_terminate
        assert stream.reads == 0
        assert stream.closed
        assert loop.session.cancelled
        assert loop.session.nodes == {}
        assert bus.get_history(SessionEventType.SESSION_UPDATED) == []

    @pytest.mark.asyncio
    async def test_run_context_carries_conversation(self):
        loop = RunLoop(agent_id="agent_7")
        await loop.consume(
            RecordingStream([frame({"type": "dag_start", "conversationId": "conv_5"})])
        )
        context = get_run_context()
        assert context["conversation_id"] == "conv_5"
        assert context["agent_id"] == "agent_7"


class TestPublishing:
    @pytest.mark.asyncio
    async def test_snapshot_per_applied_event(self):
        bus = SessionEventBus()
        updates = []

        async def on_update(event):
            updates.append(event.session)

        bus.subscribe([SessionEventType.SESSION_UPDATED], on_update)
        loop = RunLoop(ExecutionSession.empty("conv_1"), event_bus=bus)
        await loop.consume(
            RecordingStream(
                [
                    lifecycle("starting", "n1") + lifecycle("completed", "n1"),
                    frame({"type": "dag_complete"}),
                ]
            )
        )

        assert len(updates) == 3
        assert updates[0].get_node("n1").status == NodeStatus.RUNNING
        assert updates[1].get_node("n1").status == NodeStatus.COMPLETED
        assert updates[2].finished

    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        bus = SessionEventBus()
        loop = RunLoop(ExecutionSession.empty("conv_1"), event_bus=bus)

        await loop.consume(RecordingStream([lifecycle("paused", "n1")]))
        suspended = bus.get_history(SessionEventType.RUN_SUSPENDED)
        assert len(suspended) == 1
        assert suspended[0].data["intervention"]["nodeId"] == "n1"

        loop.update(ExecutionSession.empty("conv_1"))
        await loop.consume(RecordingStream([frame({"type": "dag_complete"})]))
        assert len(bus.get_history(SessionEventType.RUN_COMPLETED)) == 1

        await loop.consume(RecordingStream([lifecycle("starting", "n2")]))
        failed = bus.get_history(SessionEventType.RUN_FAILED)
        assert failed[0].data["error"] == STREAM_ENDED_EARLY
