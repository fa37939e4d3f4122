"""Neighbourhood extraction around one node."""

from collections import deque
from typing import Dict, Set

from libs.common.errors import NodeNotFoundError
from libs.models.graph import KnowledgeGraph


def extract_subgraph(graph: KnowledgeGraph, center_id: str, max_depth: int = 2) -> KnowledgeGraph:
    """Nodes within ``max_depth`` hops of ``center_id`` (edges followed both ways) and the edges among them."""
    if graph.node(center_id) is None:
        raise NodeNotFoundError(f"Node {center_id} not found")

    neighbours: Dict[str, Set[str]] = {}
    for edge in graph.edges:
        neighbours.setdefault(edge.source, set()).add(edge.target)
        neighbours.setdefault(edge.target, set()).add(edge.source)

    depth = {center_id: 0}
    queue = deque([center_id])
    while queue:
        current = queue.popleft()
        if depth[current] >= max_depth:
            continue
        for neighbour in sorted(neighbours.get(current, ())):
            if neighbour not in depth:
                depth[neighbour] = depth[current] + 1
                queue.append(neighbour)

    return KnowledgeGraph(
        nodes=tuple(n for n in graph.nodes if n.id in depth),
        edges=tuple(e for e in graph.edges if e.source in depth and e.target in depth),
    )
