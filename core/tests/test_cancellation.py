"""Tests for cancellation and the running-node repair."""

import asyncio
import json

import pytest

from dagwatch.runtime.cancellation import CancellationController, repair_session
from dagwatch.runtime.event_bus import SessionEventBus, SessionEventType
from dagwatch.runtime.run_loop import RunLoop
from dagwatch.runtime.session import ExecutionSession, NodeExecutionState, NodeStatus


def _session(**kwargs) -> ExecutionSession:
    nodes = {
        "n0": NodeExecutionState(node_id="n0", name="done", status=NodeStatus.COMPLETED),
        "n1": NodeExecutionState(node_id="n1", name="busy", status=NodeStatus.RUNNING),
    }
    return ExecutionSession(conversation_id="conv_1", nodes=nodes, **kwargs)


def frame(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


class TestRepairSession:
    def test_running_node_becomes_error(self):
        repaired = repair_session(_session(active_node_id="n1"), cancelled=True)

        assert repaired.get_node("n1").status == NodeStatus.ERROR
        assert repaired.get_node("n0").status == NodeStatus.COMPLETED
        assert repaired.active_node_id is None
        assert repaired.errored_node_id == "n1"
        assert repaired.cancelled
        assert repaired.finished
        assert not repaired.failed

    def test_without_active_node_uses_last_running(self):
        session = _session()
        session = session.with_node(
            NodeExecutionState(node_id="n2", name="also busy", status=NodeStatus.RUNNING)
        )
        repaired = repair_session(session)

        assert repaired.errored_node_id == "n2"
        assert repaired.nodes_with_status(NodeStatus.RUNNING) == []
        assert repaired.failed

    def test_keeps_previous_error_when_nothing_was_running(self):
        session = ExecutionSession(errored_node_id="n9")
        assert repair_session(session).errored_node_id == "n9"

    def test_drops_pending_review(self):
        loop_session = _session(paused_node_id="n1")
        repaired = repair_session(loop_session, cancelled=True)
        assert repaired.paused_node_id is None
        assert repaired.intervention is None

    def test_is_idempotent(self):
        once = repair_session(_session(active_node_id="n1"), cancelled=True)
        assert repair_session(once, cancelled=True) == once
        assert repair_session(once, error_message="late") == once

    def test_noop_after_natural_completion(self):
        session = _session(finished=True)
        assert repair_session(session, cancelled=True) is session


class TestCancellationController:
    @pytest.mark.asyncio
    async def test_cancel_idle_session(self):
        loop = RunLoop(_session(active_node_id="n1"))
        session = await CancellationController(loop).cancel()

        assert session.get_node("n1").status == NodeStatus.ERROR
        assert session.active_node_id is None
        assert session.errored_node_id == "n1"
        assert loop.session == session

    @pytest.mark.asyncio
    async def test_cancel_in_flight_read(self):
        gate = asyncio.Event()
        read_first = asyncio.Event()

        async def slow_stream():
            yield frame({"type": "node_lifecycle", "status": "starting", "nodeId": "n1"})
            read_first.set()
            await gate.wait()
            yield frame({"type": "dag_complete"})

        bus = SessionEventBus()
        loop = RunLoop(ExecutionSession.empty("conv_1"), event_bus=bus)
        task = asyncio.create_task(loop.consume(slow_stream()))
        await read_first.wait()
        await asyncio.sleep(0)

        session = await CancellationController(loop).cancel()

        # only the read task is cancelled; the caller gets a signal back
        assert (await task).is_terminate
        assert not task.cancelled()
        assert session.cancelled
        assert session.get_node("n1").status == NodeStatus.ERROR
        assert session.errored_node_id == "n1"
        assert not loop.is_consuming
        assert len(bus.get_history(SessionEventType.RUN_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_twice(self):
        bus = SessionEventBus()
        loop = RunLoop(_session(active_node_id="n1"), event_bus=bus)
        controller = CancellationController(loop)

        first = await controller.cancel()
        second = await controller.cancel()

        assert first == second
        assert len(bus.get_history(SessionEventType.RUN_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self):
        bus = SessionEventBus()
        loop = RunLoop(ExecutionSession.empty("conv_1"), event_bus=bus)
        await loop.consume(_one_chunk(frame({"type": "dag_complete"})))
        before = loop.session

        after = await CancellationController(loop).cancel()

        assert after == before
        assert not after.cancelled
        assert bus.get_history(SessionEventType.RUN_CANCELLED) == []

    @pytest.mark.asyncio
    async def test_cancel_paused_session(self):
        loop = RunLoop()
        await loop.consume(
            _one_chunk(frame({"type": "node_lifecycle", "status": "paused", "nodeId": "n1"}))
        )
        assert loop.session.awaiting_review

        session = await CancellationController(loop).cancel()
        assert not session.awaiting_review
        assert session.cancelled
        # the paused node never ran again; it keeps its status
        assert session.get_node("n1").status == NodeStatus.PAUSED


async def _one_chunk(chunk: bytes):
    yield chunk
