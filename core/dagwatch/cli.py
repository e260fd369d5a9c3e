"""
Command-line interface for dagwatch.

Usage:
    dagwatch run <agent_id> --message "summarize the report"
    dagwatch run <agent_id> --message "..." --conversation conv_1 --auto-approve
    dagwatch classify graph.json <source_node> <target_node>
    dagwatch replay captured_stream.txt
"""

import argparse
import asyncio
import json
import sys
from collections.abc import AsyncIterator
from pathlib import Path

from dagwatch.client import AgentClient
from dagwatch.config import ClientConfig
from dagwatch.errors import DagwatchError
from dagwatch.graph import from_document
from dagwatch.observability import configure_logging
from dagwatch.runtime.event_bus import SessionEvent, SessionEventType
from dagwatch.runtime.run_loop import RunLoop
from dagwatch.runtime.session import ExecutionSession
from dagwatch.runtime.session_manager import SessionManager

REPLAY_CHUNK_SIZE = 4096


class _TransitionPrinter:
    """Prints one line per node status change."""

    def __init__(self):
        self._seen: dict[str, str] = {}

    async def __call__(self, event: SessionEvent) -> None:
        for node in event.session.execution_nodes():
            if self._seen.get(node.node_id) == node.status:
                continue
            self._seen[node.node_id] = node.status
            line = f"  [{node.status:>9}] {node.name}"
            if node.duration_ms is not None:
                line += f" ({node.duration_ms} ms)"
            print(line)


async def _ask_decision(session: ExecutionSession, args: argparse.Namespace) -> bool:
    intervention = session.intervention
    print(f"\nReview requested for '{intervention.node_name}'")
    if intervention.check_message:
        print(f"  {intervention.check_message}")
    if intervention.current_output:
        print(f"  output: {intervention.current_output}")

    if args.auto_approve:
        return True
    if args.auto_reject:
        return False
    answer = await asyncio.to_thread(input, "Approve? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


async def _run(args: argparse.Namespace) -> int:
    config = ClientConfig()
    if args.base_url:
        config.base_url = args.base_url

    async with AgentClient(config) as client:
        manager = SessionManager(client)
        manager.event_bus.subscribe([SessionEventType.SESSION_UPDATED], _TransitionPrinter())

        signal = await manager.start_run(args.agent_id, args.message, args.conversation)
        while signal.is_suspend:
            approved = await _ask_decision(manager.current_session, args)
            signal = await manager.submit_decision(manager.current_id, approved)

        session = manager.current_session

    if session.final_response:
        print(f"\n{session.final_response}")
    if session.failed:
        print(f"\nRun failed: {session.error_message or 'see node errors'}", file=sys.stderr)
        return 1
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_run(args))
    except DagwatchError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled", file=sys.stderr)
        return 130


def cmd_classify(args: argparse.Namespace) -> int:
    path = Path(args.graph)
    if not path.exists():
        print(f"Graph file not found: {path}", file=sys.stderr)
        return 1

    graph = from_document(path.read_text(encoding="utf-8"))
    for node_id in (args.source, args.target):
        if graph.get_node(node_id) is None:
            print(f"Unknown node: {node_id}", file=sys.stderr)
            return 1

    print(graph.classify(args.source, args.target).value)
    return 0


async def _file_chunks(path: Path) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while chunk := f.read(REPLAY_CHUNK_SIZE):
            yield chunk


def cmd_replay(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.exists():
        print(f"Stream file not found: {path}", file=sys.stderr)
        return 1

    run_loop = RunLoop()
    signal = asyncio.run(run_loop.consume(_file_chunks(path)))
    print(json.dumps(run_loop.session.to_dict(), indent=2, ensure_ascii=False))
    return 0 if signal.is_suspend or not run_loop.session.failed else 1


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run an agent and follow its execution")
    run_parser.add_argument("agent_id", help="Agent to run")
    run_parser.add_argument("--message", "-m", required=True, help="User message")
    run_parser.add_argument("--conversation", "-c", help="Continue an existing conversation")
    run_parser.add_argument("--base-url", help="Agent service base URL")
    decision = run_parser.add_mutually_exclusive_group()
    decision.add_argument("--auto-approve", action="store_true", help="Approve every review")
    decision.add_argument("--auto-reject", action="store_true", help="Reject every review")
    run_parser.set_defaults(func=cmd_run)

    classify_parser = subparsers.add_parser(
        "classify", help="Show the kind a new edge would receive"
    )
    classify_parser.add_argument("graph", help="Graph document (JSON)")
    classify_parser.add_argument("source", help="Source node id")
    classify_parser.add_argument("target", help="Target node id")
    classify_parser.set_defaults(func=cmd_classify)

    replay_parser = subparsers.add_parser(
        "replay", help="Decode a captured event stream and print the final session"
    )
    replay_parser.add_argument("file", help="Captured stream body")
    replay_parser.set_defaults(func=cmd_replay)


def main():
    parser = argparse.ArgumentParser(
        prog="dagwatch",
        description="dagwatch - Follow DAG agent runs and edit agent graphs",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
