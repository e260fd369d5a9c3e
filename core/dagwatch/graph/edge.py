"""
Edge Protocol - How nodes connect in a workflow graph.

Edges define:
1. Source and target nodes
2. The kind of connection the author drew

Edge Kinds:
- dependency: target runs after source (the default)
- loop_back: the edge closes a cycle, modelling an iterative agent pattern
- conditional: the author explicitly marked the edge as a branch

Cycles are never rejected. An edge that closes a cycle is labelled
LOOP_BACK at the moment it is drawn and keeps that label afterwards.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EdgeKind(StrEnum):
    """How an edge participates in the graph.

    Values match the ``edgeType`` strings of the stored graph document.
    """

    DEPENDENCY = "DEPENDENCY"
    LOOP_BACK = "LOOP_BACK"
    CONDITIONAL = "CONDITIONAL"


class Position(BaseModel):
    """Canvas position of a node."""

    x: float = 0.0
    y: float = 0.0


class NodeSpec(BaseModel):
    """
    A node of the workflow graph.

    ``config`` is an opaque blob owned by whoever renders and executes the
    node; the graph model never looks inside it.
    """

    id: str
    name: str = ""
    type: str = "UNKNOWN"
    position: Position = Field(default_factory=Position)

    template_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Plain dependency
        EdgeSpec(id="plan-to-exec", source="planner", target="executor")

        # Iteration back to an earlier step
        EdgeSpec(
            id="review-to-plan",
            source="reviewer",
            target="planner",
            kind=EdgeKind.LOOP_BACK,
        )
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")

    kind: EdgeKind = EdgeKind.DEPENDENCY
    condition: str | None = Field(
        default=None,
        description="Free-form branch condition for CONDITIONAL edges",
    )
    label: str | None = None

    model_config = {"extra": "allow"}

    @property
    def is_self_loop(self) -> bool:
        return self.source == self.target
