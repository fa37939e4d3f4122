"""Size bounding of an assembled graph.

A graph at or under the bound is returned unchanged, which makes the reducer
idempotent. Over the bound, in order:

1. nodes with the same normalized name on the same level are merged into the
   first one; edges are rewired to the survivor and children re-parented
2. each category or subcategory keeps its first K skill children (insertion
   order); the remaining skills are dropped
3. children of dropped skills move to a surviving skill that already links to
   them, otherwise to the dropped skill's nearest surviving ancestor; levels
   below a moved node are recomputed
4. if still over the bound, the deepest childless nodes are dropped, latest
   first, until the graph fits

Edges referencing a dropped node are removed at every step, so the result has
no dangling edges.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

import structlog

from api.tools.graph_builder import CONTAINS
from libs.models.graph import GraphEdge, GraphNode, KnowledgeGraph, NodeType, color_for

logger = structlog.get_logger(__name__)

DEFAULT_MAX_NODES = 150
DEFAULT_MAX_SKILLS_PER_PARENT = 3

_SKILL_PARENTS = (NodeType.CATEGORY, NodeType.SUBCATEGORY)


def _dedupe_edges(edges: List[GraphEdge], alive: Set[str]) -> List[GraphEdge]:
    kept: List[GraphEdge] = []
    seen: Set[Tuple[str, str]] = set()
    for edge in edges:
        if edge.source == edge.target or edge.source not in alive or edge.target not in alive:
            continue
        if edge.key in seen:
            continue
        seen.add(edge.key)
        kept.append(edge)
    return kept


def merge_duplicates(nodes: List[GraphNode], edges: List[GraphEdge]) -> Tuple[List[GraphNode], List[GraphEdge]]:
    """Merge nodes sharing normalized name and level into the first occurrence."""
    survivor_by_key: Dict[Tuple[str, int], str] = {}
    alias: Dict[str, str] = {}
    kept: List[GraphNode] = []
    for node in nodes:
        key = (node.normalized_name, node.level)
        if node.type is not NodeType.ROOT and key in survivor_by_key:
            alias[node.id] = survivor_by_key[key]
            continue
        survivor_by_key[key] = node.id
        kept.append(node)

    if not alias:
        return nodes, edges

    def resolve(node_id: Optional[str]) -> Optional[str]:
        return alias.get(node_id, node_id) if node_id is not None else None

    kept = [
        n.model_copy(update={"parent_id": resolve(n.parent_id)}) if n.parent_id in alias else n
        for n in kept
    ]
    rewired = [
        e.model_copy(update={"source": resolve(e.source), "target": resolve(e.target)})
        if e.source in alias or e.target in alias
        else e
        for e in edges
    ]
    return kept, _dedupe_edges(rewired, {n.id for n in kept})


def _cap_skills(nodes: List[GraphNode], max_skills: int) -> Set[str]:
    by_id = {n.id: n for n in nodes}
    counts: Dict[str, int] = {}
    dropped: Set[str] = set()
    for node in nodes:
        if node.type is not NodeType.SKILL or node.parent_id is None:
            continue
        parent = by_id.get(node.parent_id)
        if parent is None or parent.type not in _SKILL_PARENTS:
            continue
        counts[parent.id] = counts.get(parent.id, 0) + 1
        if counts[parent.id] > max_skills:
            dropped.add(node.id)
    return dropped


def _rehome_children(
    nodes: List[GraphNode], edges: List[GraphEdge], dropped: Set[str]
) -> Tuple[List[GraphNode], List[GraphEdge], int]:
    """Move the children of dropped skills onto surviving nodes.

    A child goes to a surviving skill that already links to it when one sits
    on the right level, otherwise to the nearest surviving ancestor of the
    dropped skill (the root as a last resort). Returns the surviving nodes,
    edges extended with the new parent-of-record edges, and how many children
    were moved.
    """
    by_id = {n.id: n for n in nodes}
    root_id = next((n.id for n in nodes if n.type is NodeType.ROOT), None)

    def surviving_ancestor(node_id: str) -> Optional[str]:
        seen: Set[str] = set()
        current = by_id[node_id].parent_id
        while current is not None and current in by_id and current not in seen:
            if current not in dropped:
                return current
            seen.add(current)
            current = by_id[current].parent_id
        return root_id

    moved: Dict[str, str] = {}
    for node in nodes:
        if node.id in dropped or node.parent_id not in dropped:
            continue
        linked_skill = next(
            (
                e.source
                for e in edges
                if e.target == node.id
                and e.source not in dropped
                and e.source in by_id
                and by_id[e.source].type is NodeType.SKILL
                and by_id[e.source].level + 1 == node.level
            ),
            None,
        )
        new_parent = linked_skill or surviving_ancestor(node.parent_id)
        if new_parent is not None:
            moved[node.id] = new_parent

    survivors = [
        n.model_copy(update={"parent_id": moved[n.id]}) if n.id in moved else n
        for n in nodes
        if n.id not in dropped
    ]
    edge_keys = {e.key for e in edges}
    extra = [
        GraphEdge(source=parent_id, target=child_id, label=CONTAINS, strength=1.0)
        for child_id, parent_id in moved.items()
        if (parent_id, child_id) not in edge_keys
    ]
    return _relevel(survivors), edges + extra, len(moved)


def _relevel(nodes: List[GraphNode]) -> List[GraphNode]:
    """Recompute levels top-down from parent ids; unreachable nodes keep theirs."""
    by_id = {n.id: n for n in nodes}
    levels: Dict[str, int] = {}

    def level_of(node_id: str, depth: int = 0) -> int:
        if node_id in levels:
            return levels[node_id]
        node = by_id[node_id]
        if node.type is NodeType.ROOT or node.parent_id not in by_id or depth > len(by_id):
            levels[node_id] = node.level
        else:
            levels[node_id] = level_of(node.parent_id, depth + 1) + 1
        return levels[node_id]

    updated = []
    for node in nodes:
        level = level_of(node.id)
        if level != node.level:
            node = node.model_copy(update={"level": level, "color": color_for(node.type, level)})
        updated.append(node)
    return updated


def _trim_leaves(nodes: List[GraphNode], max_nodes: int) -> List[GraphNode]:
    """Drop the deepest childless nodes, latest first, until the bound holds."""
    nodes = list(nodes)
    while len(nodes) > max_nodes:
        parents = {n.parent_id for n in nodes if n.parent_id is not None}
        candidates = [
            (n.level, index)
            for index, n in enumerate(nodes)
            if n.type is not NodeType.ROOT and n.id not in parents
        ]
        if not candidates:
            break
        _, index = max(candidates)
        nodes.pop(index)
    return nodes


def reduce_graph(
    graph: KnowledgeGraph,
    max_nodes: int = DEFAULT_MAX_NODES,
    max_skills_per_parent: int = DEFAULT_MAX_SKILLS_PER_PARENT,
) -> KnowledgeGraph:
    """Bound the graph to ``max_nodes`` nodes. Idempotent."""
    if len(graph.nodes) <= max_nodes:
        return graph

    original = len(graph.nodes)
    nodes, edges = merge_duplicates(list(graph.nodes), list(graph.edges))
    merged = original - len(nodes)

    dropped_skills = _cap_skills(nodes, max_skills_per_parent) if len(nodes) > max_nodes else set()
    rehomed = 0
    if dropped_skills:
        nodes, edges, rehomed = _rehome_children(nodes, edges, dropped_skills)
        edges = _dedupe_edges(edges, {n.id for n in nodes})

    if len(nodes) > max_nodes:
        nodes = _trim_leaves(nodes, max_nodes)
        edges = _dedupe_edges(edges, {n.id for n in nodes})

    logger.info(
        "Graph reduced",
        original_nodes=original,
        merged=merged,
        skills_dropped=len(dropped_skills),
        children_rehomed=rehomed,
        final_nodes=len(nodes),
        final_edges=len(edges),
    )
    return KnowledgeGraph(nodes=tuple(nodes), edges=tuple(edges))
