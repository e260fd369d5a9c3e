"""
Cycle classification for newly drawn edges.

A candidate edge ``source -> target`` closes a cycle when ``source`` is
already reachable from ``target`` through the existing edges. Such edges
are labelled LOOP_BACK; everything else is a DEPENDENCY unless the author
asks for CONDITIONAL.

The check is stateless: adjacency is rebuilt from the full edge list on
every call, which is O(V+E) and fine for graphs of a few dozen nodes.
"""

from collections import defaultdict
from collections.abc import Iterable

from dagwatch.graph.edge import EdgeKind, EdgeSpec, NodeSpec


def build_adjacency(edges: Iterable[EdgeSpec]) -> dict[str, list[str]]:
    """Directed adjacency view (source -> targets) of an edge list."""
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)
    return adjacency


def is_reachable(edges: Iterable[EdgeSpec], start: str, goal: str) -> bool:
    """Return True if ``goal`` can be reached from ``start`` following edges."""
    if start == goal:
        return True

    adjacency = build_adjacency(edges)
    visited: set[str] = set()
    to_visit = [start]

    while to_visit:
        current = to_visit.pop()
        if current in visited:
            continue
        visited.add(current)
        for successor in adjacency.get(current, ()):
            if successor == goal:
                return True
            if successor not in visited:
                to_visit.append(successor)

    return False


def classify(
    nodes: Iterable[NodeSpec],
    edges: Iterable[EdgeSpec],
    candidate_source: str,
    candidate_target: str,
) -> EdgeKind:
    """
    Decide the kind of a candidate edge before it is inserted.

    Args:
        nodes: Current graph nodes. Unknown endpoints are allowed; a node
            with no edges simply has nothing reachable from it.
        edges: Current graph edges (the candidate is not among them)
        candidate_source: Source node ID of the new edge
        candidate_target: Target node ID of the new edge

    Returns:
        EdgeKind.LOOP_BACK if the edge closes a cycle (including self-loops),
        otherwise EdgeKind.DEPENDENCY.
    """
    if candidate_source == candidate_target:
        return EdgeKind.LOOP_BACK

    if is_reachable(edges, start=candidate_target, goal=candidate_source):
        return EdgeKind.LOOP_BACK

    return EdgeKind.DEPENDENCY
