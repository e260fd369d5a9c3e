"""
Graph Model - Edit-time container for a workflow's nodes and edges.

The model is a plain data holder. The only decision it delegates is the
classification of a newly drawn edge (see ``dagwatch.graph.cycles``);
nothing is ever rejected for forming a cycle.

Usage:
    graph = GraphModel()
    graph.add_node(NodeSpec(id="plan", name="Planner"))
    graph.add_node(NodeSpec(id="review", name="Reviewer"))
    graph.connect("plan", "review")      # DEPENDENCY
    graph.connect("review", "plan")      # LOOP_BACK
"""

import logging
import uuid

from pydantic import BaseModel, Field

from dagwatch.graph.cycles import classify
from dagwatch.graph.edge import EdgeKind, EdgeSpec, NodeSpec

logger = logging.getLogger(__name__)


class GraphModel(BaseModel):
    """
    Nodes (unique by id) and edges (duplicates between the same pair allowed)
    of one workflow graph.
    """

    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    # === NODES ===

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def add_node(self, node: NodeSpec) -> NodeSpec:
        """Add a node. Raises ValueError if the id is already taken."""
        if self.get_node(node.id) is not None:
            raise ValueError(f"Node '{node.id}' already exists")
        self.nodes.append(node)
        return node

    def update_node(self, node_id: str, **changes) -> NodeSpec:
        """Explicitly edit a node; returns the replacement instance."""
        for index, node in enumerate(self.nodes):
            if node.id == node_id:
                if "id" in changes and changes["id"] != node_id:
                    raise ValueError("Node id cannot be changed")
                updated = node.model_copy(update=changes)
                self.nodes[index] = updated
                return updated
        raise ValueError(f"Node '{node_id}' not found")

    def remove_node(self, node_id: str) -> bool:
        """Remove a node together with every edge touching it."""
        before = len(self.nodes)
        self.nodes = [n for n in self.nodes if n.id != node_id]
        if len(self.nodes) == before:
            return False
        self.edges = [e for e in self.edges if e.source != node_id and e.target != node_id]
        return True

    # === EDGES ===

    def get_edge(self, edge_id: str) -> EdgeSpec | None:
        """Get an edge by ID."""
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def classify(self, source: str, target: str) -> EdgeKind:
        """Kind a new ``source -> target`` edge would receive right now."""
        return classify(self.nodes, self.edges, source, target)

    def connect(
        self,
        source: str,
        target: str,
        conditional: bool = False,
        edge_id: str | None = None,
        condition: str | None = None,
        label: str | None = None,
    ) -> EdgeSpec:
        """
        Insert a new edge, classifying it against the current edge set.

        Args:
            source: Source node ID
            target: Target node ID
            conditional: Author explicitly selected a conditional branch.
                Ignored when the edge closes a cycle (LOOP_BACK wins).
            edge_id: Optional explicit ID; generated otherwise
            condition: Branch condition text for conditional edges
            label: Display label

        Returns:
            The inserted EdgeSpec
        """
        kind = self.classify(source, target)
        if kind == EdgeKind.DEPENDENCY and conditional:
            kind = EdgeKind.CONDITIONAL

        edge = EdgeSpec(
            id=edge_id or f"edge_{uuid.uuid4().hex[:12]}",
            source=source,
            target=target,
            kind=kind,
            condition=condition,
            label=label,
        )
        self.edges.append(edge)

        if kind == EdgeKind.LOOP_BACK:
            logger.debug(f"Edge {edge.id} ({source} -> {target}) closes a cycle, marked loop-back")

        return edge

    def set_edge_kind(
        self,
        edge_id: str,
        kind: EdgeKind,
        condition: str | None = None,
    ) -> EdgeSpec:
        """Explicit author edit of an edge's kind. Does not re-run classification."""
        for index, edge in enumerate(self.edges):
            if edge.id == edge_id:
                update: dict = {"kind": EdgeKind(kind)}
                if condition is not None:
                    update["condition"] = condition
                updated = edge.model_copy(update=update)
                self.edges[index] = updated
                return updated
        raise ValueError(f"Edge '{edge_id}' not found")

    def remove_edge(self, edge_id: str) -> bool:
        """Remove an edge. Remaining edges keep their kinds."""
        before = len(self.edges)
        self.edges = [e for e in self.edges if e.id != edge_id]
        return len(self.edges) != before

    # === STRUCTURE ===

    def start_node_id(self) -> str:
        """
        First node without incoming edges; the first node if every node has
        one (a fully cyclic graph); "" for an empty graph.
        """
        targets = {e.target for e in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node.id
        return self.nodes[0].id if self.nodes else ""

    def validate(self) -> list[str]:
        """Validate references. Cycles are never an error."""
        errors = []

        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen.add(node.id)

        for edge in self.edges:
            if edge.source not in seen:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if edge.target not in seen:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        return errors
