"""Tests for EventApplier: the reducer from run events to ExecutionSession state."""

import pytest

from dagwatch.config import FINAL_RESPONSE_NODE_ID
from dagwatch.errors import ProtocolError
from dagwatch.runtime.applier import EventApplier, RegressionPolicy, SignalKind
from dagwatch.runtime.events import (
    AnswerEvent,
    DagCompleteEvent,
    DagStartEvent,
    NodeExecuteEvent,
    NodeLifecycleEvent,
    TokenEvent,
    UnknownEvent,
)
from dagwatch.runtime.session import DagProgress, ExecutionSession, NodeStatus


def starting(node_id, name=None):
    return NodeLifecycleEvent(status="starting", node_id=node_id, node_name=name or node_id)


def completed(node_id, duration_ms=None, result=None, progress=None):
    return NodeLifecycleEvent(
        status="completed",
        node_id=node_id,
        duration_ms=duration_ms,
        result=result,
        progress=progress,
    )


def failed(node_id, result=None):
    return NodeLifecycleEvent(status="failed", node_id=node_id, result=result)


def paused(node_id, message="", allow_modify=False):
    return NodeLifecycleEvent(
        status="paused",
        node_id=node_id,
        node_name=node_id,
        check_message=message,
        allow_modify_output=allow_modify,
    )


def execute(content, node_id=None, name=None):
    return NodeExecuteEvent(node_id=node_id, node_name=name, content=content)


@pytest.fixture
def applier():
    return EventApplier(clock=lambda: 1000.0)


def run(applier, events, session=None):
    return applier.apply_all(session or ExecutionSession.empty("conv_1"), events)


class TestRunBoundaries:
    def test_dag_start_resets_progress(self, applier):
        session = ExecutionSession(
            conversation_id="c",
            active_node_id="old",
            errored_node_id="older",
            dag_progress=DagProgress(3, 3, 100),
            finished=True,
            failed=True,
        )
        session, signal = applier.apply(session, DagStartEvent(total_nodes=4))

        assert signal.kind == SignalKind.CONTINUE
        assert session.dag_progress == DagProgress(current=0, total=4, percentage=0)
        assert session.active_node_id is None
        assert session.errored_node_id is None
        assert not session.finished
        assert not session.failed

    def test_dag_complete_terminates(self, applier):
        session, signal = run(applier, [DagStartEvent(total_nodes=1), starting("n1")])
        session, signal = applier.apply(session, DagCompleteEvent())

        assert signal.kind == SignalKind.TERMINATE
        assert session.finished
        assert not session.failed
        assert session.active_node_id is None

    def test_dag_complete_failed_status(self, applier):
        session, _ = applier.apply(ExecutionSession.empty(), DagCompleteEvent(status="failed"))
        assert session.failed

    def test_conversation_id_is_adopted(self, applier):
        session, _ = applier.apply(
            ExecutionSession.empty(), DagStartEvent(total_nodes=1, conversation_id="conv_9")
        )
        assert session.conversation_id == "conv_9"

    def test_conversation_id_is_not_overwritten(self, applier):
        session, _ = applier.apply(
            ExecutionSession.empty("conv_1"), DagStartEvent(conversation_id="conv_2")
        )
        assert session.conversation_id == "conv_1"

    def test_input_session_is_never_mutated(self, applier):
        original = ExecutionSession.empty("conv_1")
        applier.apply_all(original, [DagStartEvent(total_nodes=1), starting("n1")])
        assert original.nodes == {}
        assert original.dag_progress is None


class TestNodeLifecycle:
    def test_starting_inserts_running_node(self, applier):
        session, signal = run(applier, [starting("n1", "Planner")])
        node = session.get_node("n1")

        assert signal.kind == SignalKind.CONTINUE
        assert node.status == NodeStatus.RUNNING
        assert node.name == "Planner"
        assert node.start_time == 1000.0
        assert session.active_node_id == "n1"

    def test_starting_clears_error_and_pause(self, applier):
        session = ExecutionSession(errored_node_id="x", paused_node_id="y")
        session, _ = applier.apply(session, starting("n1"))
        assert session.errored_node_id is None
        assert session.paused_node_id is None

    def test_completed(self, applier):
        progress = DagProgress(current=1, total=2, percentage=50)
        session, _ = run(
            applier, [starting("n1"), completed("n1", duration_ms=500, result="ok", progress=progress)]
        )
        node = session.get_node("n1")

        assert node.status == NodeStatus.COMPLETED
        assert node.duration_ms == 500
        assert node.result_summary == "ok"
        assert session.dag_progress == progress
        assert session.active_node_id is None

    def test_completed_keeps_progress_when_absent(self, applier):
        session, _ = run(applier, [DagStartEvent(total_nodes=2), starting("n1"), completed("n1")])
        assert session.dag_progress == DagProgress(0, 2, 0)

    def test_completed_other_node_keeps_active(self, applier):
        session, _ = run(applier, [starting("n1"), starting("n2"), completed("n1")])
        assert session.active_node_id == "n2"

    def test_completed_is_idempotent(self, applier):
        event = completed("n1", duration_ms=500, result="ok", progress=DagProgress(1, 2, 50))
        once, _ = run(applier, [starting("n1"), event])
        twice, _ = applier.apply(once, event)
        assert twice == once

    def test_completed_without_starting(self, applier):
        session, _ = run(applier, [completed("n9", duration_ms=10)])
        assert session.get_node("n9").status == NodeStatus.COMPLETED

    def test_failed(self, applier):
        session, signal = run(applier, [starting("n1"), failed("n1", result="boom")])
        node = session.get_node("n1")

        assert signal.kind == SignalKind.CONTINUE
        assert node.status == NodeStatus.ERROR
        assert node.result_summary == "boom"
        assert session.errored_node_id == "n1"
        assert session.active_node_id is None

    def test_paused_suspends(self, applier):
        session, signal = run(
            applier,
            [starting("n2"), execute("draft", node_id="n2"), paused("n2", "Please review", True)],
        )

        assert signal.kind == SignalKind.SUSPEND
        assert signal.intervention == session.intervention
        assert session.paused_node_id == "n2"
        assert session.active_node_id is None
        assert session.get_node("n2").status == NodeStatus.PAUSED
        assert session.awaiting_review

        intervention = session.intervention
        assert intervention.node_id == "n2"
        assert intervention.check_message == "Please review"
        assert intervention.allow_modify_output is True
        assert intervention.paused_at == 1000.0
        assert intervention.current_output == "draft"

    def test_apply_all_stops_at_suspend(self, applier):
        session, signal = run(applier, [starting("n2"), paused("n2"), starting("n3")])
        assert signal.is_suspend
        assert session.get_node("n3") is None

    def test_unknown_status_is_ignored(self, applier, caplog):
        before, _ = run(applier, [starting("n1")])
        after, signal = applier.apply(
            before, NodeLifecycleEvent(status="exploded", node_id="n1")
        )
        assert after == before
        assert signal.is_continue
        assert "unknown status" in caplog.text

    def test_lifecycle_without_node_id_is_ignored(self, applier):
        session, _ = applier.apply(ExecutionSession.empty(), NodeLifecycleEvent(status="starting"))
        assert session.nodes == {}


class TestStatusRegression:
    def test_overwrite_reruns_node(self, applier):
        session, _ = run(
            applier,
            [
                starting("n1"),
                execute("first ", node_id="n1"),
                completed("n1", duration_ms=5, result="r1"),
                starting("n1"),
            ],
        )
        node = session.get_node("n1")

        assert node.status == NodeStatus.RUNNING
        assert node.duration_ms is None
        assert node.result_summary is None
        assert node.content == "first "
        assert session.active_node_id == "n1"

    def test_reject_ignores_restart(self, caplog):
        applier = EventApplier(regression_policy=RegressionPolicy.REJECT)
        session, _ = applier.apply_all(
            ExecutionSession.empty(), [starting("n1"), failed("n1")]
        )
        after, signal = applier.apply(session, starting("n1"))

        assert after == session
        assert signal.is_continue
        assert "restarted" in caplog.text

    def test_strict_reject_raises(self):
        applier = EventApplier(regression_policy="reject", strict=True)
        session, _ = applier.apply_all(ExecutionSession.empty(), [starting("n1"), completed("n1")])
        with pytest.raises(ProtocolError):
            applier.apply(session, starting("n1"))

    def test_paused_node_resumes_without_regression(self):
        applier = EventApplier(regression_policy=RegressionPolicy.REJECT, strict=True)
        session, _ = applier.apply_all(ExecutionSession.empty(), [starting("n1"), paused("n1")])
        session, _ = applier.apply(session, starting("n1"))
        assert session.get_node("n1").status == NodeStatus.RUNNING


class TestNodeExecute:
    def test_appends_by_id(self, applier):
        session, _ = run(
            applier, [starting("n1"), execute("a", node_id="n1"), execute("b", node_id="n1")]
        )
        assert session.get_node("n1").content == "ab"

    def test_resolves_running_node_by_name(self, applier):
        session, _ = run(applier, [starting("n1", "Writer"), execute("text", name="Writer")])
        assert list(session.nodes) == ["n1"]
        assert session.get_node("n1").content == "text"

    def test_name_match_ignores_finished_nodes(self, applier):
        session, _ = run(
            applier,
            [starting("n1", "Writer"), completed("n1"), execute("late", name="Writer")],
        )
        assert session.get_node("n1").content == ""
        assert len(session.nodes) == 2

    def test_unknown_id_synthesizes_node(self, applier):
        session, _ = run(applier, [execute("x", node_id="ghost")])
        node = session.get_node("ghost")
        assert node.status == NodeStatus.RUNNING
        assert node.content == "x"

    def test_no_id_no_match_synthesizes_unnamed(self, applier):
        session, _ = run(applier, [execute("x"), execute("y")])
        assert list(session.nodes) == ["unnamed_1", "unnamed_2"]

    def test_synthetic_id_avoids_collisions(self, applier):
        session, _ = run(applier, [starting("unnamed_2"), execute("x")])
        assert "unnamed_3" in session.nodes

    def test_duplicate_fragments_are_appended_as_is(self, applier):
        fragment = execute("dup ", node_id="n1")
        session, _ = run(applier, [starting("n1"), fragment, fragment])
        assert session.get_node("n1").content == "dup dup "


class TestFinalResponse:
    def test_tokens_build_final_response(self, applier):
        session, _ = run(applier, [TokenEvent(content="Hel"), AnswerEvent(content="lo")])
        assert session.final_response == "Hello"
        assert session.get_node(FINAL_RESPONSE_NODE_ID).status == NodeStatus.RUNNING

    def test_final_response_completed_at_dag_complete(self, applier):
        session, _ = run(applier, [TokenEvent(content="done"), DagCompleteEvent()])
        assert session.get_node(FINAL_RESPONSE_NODE_ID).status == NodeStatus.COMPLETED
        assert session.execution_nodes() == []

    def test_unknown_event_is_noop(self, applier, caplog):
        before = ExecutionSession.empty("c")
        after, signal = applier.apply(before, UnknownEvent(type="heartbeat"))
        assert after == before
        assert signal.is_continue
        assert "heartbeat" in caplog.text


class TestScenarios:
    def test_terminal_count_matches_completed_and_failed_events(self, applier):
        events = [
            DagStartEvent(total_nodes=4),
            starting("a"),
            completed("a"),
            starting("b"),
            execute("x", node_id="b"),
            failed("b"),
            starting("c"),
            completed("c"),
            completed("c"),
            TokenEvent(content="answer"),
            DagCompleteEvent(),
        ]
        session, signal = run(applier, events)

        terminal = [n for n in session.execution_nodes() if n.status.is_terminal]
        reported = {e.node_id for e in events if getattr(e, "status", None) in ("completed", "failed")}
        assert signal.is_terminate
        assert len(terminal) == len(reported) == 3
        # the completed final-response node is kept apart from execution nodes
        assert session.get_node(FINAL_RESPONSE_NODE_ID).status == NodeStatus.COMPLETED
        assert len(session.nodes) == 4

    def test_run_until_review(self, applier):
        events = [
            DagStartEvent(total_nodes=2),
            starting("n1"),
            execute("partial ", node_id="n1"),
            execute("answer", node_id="n1"),
            completed("n1", duration_ms=500),
            starting("n2"),
            paused("n2", "Please review"),
        ]
        session, signal = run(applier, events)

        n1 = session.get_node("n1")
        assert n1.status == NodeStatus.COMPLETED
        assert n1.content == "partial answer"
        assert n1.duration_ms == 500
        assert session.get_node("n2").status == NodeStatus.PAUSED
        assert session.paused_node_id == "n2"
        assert signal.is_suspend
        assert session.awaiting_review

    def test_single_active_node(self, applier):
        session = ExecutionSession.empty()
        for event in [starting("a"), starting("b"), completed("a"), completed("b")]:
            session, _ = applier.apply(session, event)
            running = session.nodes_with_status(NodeStatus.RUNNING)
            assert session.active_node_id is None or session.active_node_id in {
                n.node_id for n in running
            }
