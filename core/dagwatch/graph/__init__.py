"""Graph structures: Nodes, Edges, cycle classification and the stored document."""

from dagwatch.graph.cycles import build_adjacency, classify, is_reachable
from dagwatch.graph.document import (
    EdgeDefinition,
    GraphDocument,
    NodeDefinition,
    from_document,
    to_document,
)
from dagwatch.graph.edge import EdgeKind, EdgeSpec, NodeSpec, Position
from dagwatch.graph.model import GraphModel

__all__ = [
    # Model
    "GraphModel",
    "NodeSpec",
    "EdgeSpec",
    "EdgeKind",
    "Position",
    # Classification
    "classify",
    "is_reachable",
    "build_adjacency",
    # Document
    "GraphDocument",
    "NodeDefinition",
    "EdgeDefinition",
    "to_document",
    "from_document",
]
