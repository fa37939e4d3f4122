"""Structural repair of an assembled graph.

Broken structure is repaired rather than dropped: a node whose parent is
missing, unknown or caught in a cycle is attached to the root, edges that
reference unknown nodes are removed, and levels are recomputed top-down so
that every parent-of-record edge satisfies ``level(child) == level(parent) + 1``.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, List, Optional, Set

import structlog

from api.tools.graph_builder import CONTAINS
from libs.common.errors import GraphValidationError
from libs.models.graph import GraphEdge, GraphNode, KnowledgeGraph, NodeType, color_for

logger = structlog.get_logger(__name__)


def find_violations(graph: KnowledgeGraph) -> List[str]:
    """Describe every structural problem; empty when the graph is sound."""
    problems: List[str] = []
    nodes = {n.id: n for n in graph.nodes}
    roots = [n for n in graph.nodes if n.type is NodeType.ROOT]
    if len(roots) != 1:
        problems.append(f"expected exactly one root, found {len(roots)}")

    for edge in graph.dangling_edges():
        problems.append(f"edge {edge.source}->{edge.target} references an unknown node")

    edge_keys = {(e.source, e.target) for e in graph.edges}
    for node in graph.nodes:
        if node.type is NodeType.ROOT:
            if node.level != 0:
                problems.append(f"root {node.id} has level {node.level}")
            continue
        parent = nodes.get(node.parent_id) if node.parent_id else None
        if parent is None:
            problems.append(f"node {node.id} has no known parent")
            continue
        if node.level != parent.level + 1:
            problems.append(f"node {node.id} level {node.level} under parent level {parent.level}")
        if (parent.id, node.id) not in edge_keys:
            problems.append(f"node {node.id} has no parent-of-record edge")

        seen: Set[str] = {node.id}
        current: Optional[GraphNode] = parent
        while current is not None and current.type is not NodeType.ROOT:
            if current.id in seen:
                problems.append(f"node {node.id} parent chain has a cycle")
                break
            seen.add(current.id)
            current = nodes.get(current.parent_id) if current.parent_id else None
        else:
            if current is None:
                problems.append(f"node {node.id} parent chain does not reach the root")
    return problems


def validate_graph(graph: KnowledgeGraph) -> None:
    """Raise GraphValidationError if the graph breaks a structural invariant."""
    problems = find_violations(graph)
    if problems:
        raise GraphValidationError("; ".join(problems[:5]))


def repair_graph(graph: KnowledgeGraph, root_name: str = "Role") -> KnowledgeGraph:
    """Return a structurally sound copy of ``graph``."""
    problems = find_violations(graph)
    if not problems:
        return graph
    logger.warning("Repairing graph", problems=len(problems), sample=problems[:3])

    nodes: Dict[str, GraphNode] = {n.id: n for n in graph.nodes}
    roots = [n for n in graph.nodes if n.type is NodeType.ROOT]
    if roots:
        root = roots[0]
    else:
        root = GraphNode(id="root", name=root_name, level=0, type=NodeType.ROOT, color=color_for(NodeType.ROOT, 0))
        nodes = {root.id: root, **nodes}
    nodes[root.id] = root.model_copy(update={"level": 0, "parent_id": None})

    parents: Dict[str, Optional[str]] = {}
    for node in nodes.values():
        if node.id == root.id:
            parents[node.id] = None
        elif node.type is NodeType.ROOT:
            # Extra roots become ordinary children of the first one
            parents[node.id] = root.id
        elif not node.parent_id or node.parent_id not in nodes or node.parent_id == node.id:
            parents[node.id] = root.id
        else:
            parents[node.id] = node.parent_id

    for node_id in list(parents):
        path: Set[str] = set()
        current: Optional[str] = node_id
        while current is not None and current != root.id:
            if current in path:
                parents[current] = root.id
                break
            path.add(current)
            current = parents[current]

    children: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
    for node_id, parent_id in parents.items():
        if parent_id is not None:
            children[parent_id].append(node_id)

    levels: Dict[str, int] = {root.id: 0}
    queue = deque([root.id])
    while queue:
        current = queue.popleft()
        for child in children[current]:
            levels[child] = levels[current] + 1
            queue.append(child)

    repaired_nodes = []
    for node_id, node in nodes.items():
        level = levels.get(node_id, 1)
        node_type = NodeType.CATEGORY if node.type is NodeType.ROOT and node_id != root.id else node.type
        repaired_nodes.append(
            node.model_copy(
                update={
                    "parent_id": parents[node_id],
                    "level": level,
                    "type": node_type,
                    "color": color_for(node_type, level),
                }
            )
        )

    edges = [e for e in graph.edges if e.source in nodes and e.target in nodes and e.source != e.target]
    edge_keys = {(e.source, e.target) for e in edges}
    for node_id, parent_id in parents.items():
        if parent_id is not None and (parent_id, node_id) not in edge_keys:
            edges.append(GraphEdge(source=parent_id, target=node_id, label=CONTAINS, strength=1.0))
            edge_keys.add((parent_id, node_id))

    return KnowledgeGraph(nodes=tuple(repaired_nodes), edges=tuple(edges))
