"""
Graph document - the stored node/edge list exchanged with the agent service.

Converts a GraphModel to and from the service's JSON shape:

    {
      "dagId": "dag-...", "version": "2.0", "description": "...",
      "startNodeId": "...",
      "nodes": [{"nodeId", "nodeType", "nodeName", "position",
                 "templateId"?, "userConfig"?, "config"?}],
      "edges": [{"edgeId", "source", "target", "label"?, "condition"?,
                 "edgeType": "DEPENDENCY" | "LOOP_BACK" | "CONDITIONAL"}]
    }

Node configuration is carried through untouched. Loading never
reclassifies edges: the stored ``edgeType`` is authoritative.
"""

import json
import logging
import uuid
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from dagwatch.graph.edge import EdgeKind, EdgeSpec, NodeSpec, Position
from dagwatch.graph.model import GraphModel

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = "2.0"
UNNAMED_NODE = "Unnamed node"

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True, "extra": "allow"}


class DocumentPosition(BaseModel):
    x: float = 0
    y: float = 0


class NodeDefinition(BaseModel):
    node_id: str
    node_type: str = "UNKNOWN"
    node_name: str = UNNAMED_NODE
    position: DocumentPosition = Field(default_factory=DocumentPosition)
    template_id: str | None = None
    user_config: str | None = None  # JSON string, used when template_id is set
    config: dict[str, Any] | None = None  # legacy nodes without a template

    model_config = _CAMEL


class EdgeDefinition(BaseModel):
    edge_id: str
    source: str
    target: str
    label: str | None = None
    condition: str | None = None
    edge_type: str | None = None

    model_config = _CAMEL


class GraphDocument(BaseModel):
    dag_id: str = ""
    version: str = DOCUMENT_VERSION
    description: str | None = None
    start_node_id: str = ""
    nodes: list[NodeDefinition] = Field(default_factory=list)
    edges: list[EdgeDefinition] = Field(default_factory=list)

    model_config = _CAMEL

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


def to_document(
    graph: GraphModel,
    description: str | None = None,
    dag_id: str | None = None,
) -> GraphDocument:
    """Serialize a GraphModel into the stored document shape."""
    nodes = []
    for node in graph.nodes:
        user_config = None
        config = None
        if node.template_id:
            user_config = json.dumps(node.config)
        else:
            config = dict(node.config)

        nodes.append(
            NodeDefinition(
                node_id=node.id,
                node_type=node.type or "UNKNOWN",
                node_name=node.name or UNNAMED_NODE,
                position=DocumentPosition(
                    x=round(node.position.x),
                    y=round(node.position.y),
                ),
                template_id=node.template_id,
                user_config=user_config,
                config=config,
            )
        )

    edges = [
        EdgeDefinition(
            edge_id=edge.id,
            source=edge.source,
            target=edge.target,
            label=edge.label,
            condition=edge.condition,
            edge_type=edge.kind.value,
        )
        for edge in graph.edges
    ]

    return GraphDocument(
        dag_id=dag_id or f"dag-{uuid.uuid4()}",
        version=DOCUMENT_VERSION,
        description=description,
        start_node_id=graph.start_node_id(),
        nodes=nodes,
        edges=edges,
    )


def _node_config(definition: NodeDefinition) -> dict[str, Any]:
    if definition.user_config:
        try:
            parsed = json.loads(definition.user_config)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse userConfig of node '{definition.node_id}': {e}")
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return dict(definition.config or {})


def _edge_kind(definition: EdgeDefinition) -> EdgeKind:
    if not definition.edge_type:
        return EdgeKind.DEPENDENCY
    try:
        return EdgeKind(definition.edge_type.upper())
    except ValueError:
        logger.warning(
            f"Edge '{definition.edge_id}' has unknown edgeType "
            f"'{definition.edge_type}', treating as DEPENDENCY"
        )
        return EdgeKind.DEPENDENCY


def from_document(document: GraphDocument | dict | str | None) -> GraphModel:
    """
    Build a GraphModel from a stored document (model, dict or JSON string).

    An empty or missing document yields an empty graph.
    """
    if not document:
        return GraphModel()
    if isinstance(document, str):
        document = GraphDocument.model_validate_json(document)
    elif isinstance(document, dict):
        document = GraphDocument.model_validate(document)

    nodes = [
        NodeSpec(
            id=d.node_id,
            name=d.node_name,
            type=d.node_type,
            position=Position(x=d.position.x, y=d.position.y),
            template_id=d.template_id,
            config=_node_config(d),
        )
        for d in document.nodes
    ]
    edges = [
        EdgeSpec(
            id=d.edge_id,
            source=d.source,
            target=d.target,
            kind=_edge_kind(d),
            condition=d.condition,
            label=d.label,
        )
        for d in document.edges
    ]
    return GraphModel(nodes=nodes, edges=edges)
