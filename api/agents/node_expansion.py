"""Expand one existing node of a stored graph into 4-6 more specific children."""

from dataclasses import dataclass
from typing import List, Tuple

import structlog

from api.agents.base import StageAgent
from api.agents.prompts import NODE_EXPANSION_TEMPLATE, join_or_none, render
from api.llm.generation_client import Message
from api.schemas.pipeline_state import ExpansionChild, NodeExpansion
from api.tools.graph_builder import GraphBuilder
from libs.common.errors import NodeNotFoundError
from libs.models.graph import GraphNode, KnowledgeGraph, NodeType, normalize_name

logger = structlog.get_logger(__name__)

_TEMPLATES: List[Tuple[str, Tuple[str, ...]]] = [
    ("digital", ("Digital Transformation", "Digital Marketing", "Digital Product Design")),
    ("data", ("Data Visualization", "Data Engineering", "Business Intelligence")),
    ("strategy", ("Strategic Planning", "Competitive Analysis", "Market Positioning")),
]
_GENERIC = (("Advanced", "Approach"), ("Strategic", "Methodology"), ("Modern", "Framework"), ("Innovative", "Practice"))


@dataclass(frozen=True)
class ExpansionContext:
    session_id: str
    role_name: str
    node: GraphNode
    existing_children: Tuple[str, ...] = ()


def template_children(node_name: str) -> List[ExpansionChild]:
    """Deterministic sub-topics used when generation fails."""
    lowered = node_name.lower()
    for keyword, names in _TEMPLATES:
        if keyword in lowered:
            return [ExpansionChild(name=name) for name in names]
    return [ExpansionChild(name=f"{prefix} {node_name} {suffix}") for prefix, suffix in _GENERIC]


class NodeExpansionAgent(StageAgent[NodeExpansion]):
    name = "node_expansion"
    schema = NodeExpansion
    temperature = 0.7
    max_tokens = 1000

    def build_messages(self, context: ExpansionContext) -> List[Message]:
        return render(
            NODE_EXPANSION_TEMPLATE,
            role_name=context.role_name,
            node_name=context.node.name,
            node_description=context.node.description or "no description",
            existing=join_or_none(list(context.existing_children)),
        )

    def postprocess(self, parsed: NodeExpansion, context: ExpansionContext) -> NodeExpansion:
        return NodeExpansion(children=parsed.children[:6])

    def fallback(self, context: ExpansionContext) -> NodeExpansion:
        return NodeExpansion(children=template_children(context.node.name))


def expansion_context(session_id: str, graph: KnowledgeGraph, node_id: str) -> ExpansionContext:
    node = graph.node(node_id)
    if node is None:
        raise NodeNotFoundError(f"Node {node_id} not found in session {session_id}")
    root = graph.root
    return ExpansionContext(
        session_id=session_id,
        role_name=root.name if root else node.name,
        node=node,
        existing_children=tuple(child.name for child in graph.children_of(node_id)),
    )


def apply_expansion(graph: KnowledgeGraph, node_id: str, expansion: NodeExpansion) -> KnowledgeGraph:
    """Attach the expansion's children under ``node_id``, skipping names already present there."""
    builder = GraphBuilder(graph)
    parent = builder.nodes.get(node_id)
    if parent is None:
        raise NodeNotFoundError(f"Node {node_id} not found")

    child_type = NodeType.SUBCATEGORY if parent.level + 1 <= 2 else NodeType.SKILL
    present = {normalize_name(child.name) for child in builder.children(node_id)}
    added = 0
    for child in expansion.children:
        key = normalize_name(child.name)
        if key in present:
            continue
        present.add(key)
        builder.add_node(child.name, child_type, parent, child.description)
        added += 1

    logger.info("Node expanded", node_id=node_id, added=added, child_type=child_type.value)
    return builder.build()
