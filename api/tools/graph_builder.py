"""Incremental construction of a ``KnowledgeGraph``.

Keeps insertion order (the reducer's "first K survive" rule depends on it),
allocates stable ids, and refuses duplicate or self-referencing edges.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

from libs.models.graph import (
    GraphEdge,
    GraphNode,
    KnowledgeGraph,
    NodeType,
    color_for,
    normalize_name,
)

CONTAINS = "contains"

_ID_PREFIX = {
    NodeType.ROOT: "root",
    NodeType.CATEGORY: "cat",
    NodeType.SUBCATEGORY: "sub",
    NodeType.SKILL: "skill",
    NodeType.KEYWORD: "kw",
    NodeType.INDUSTRY: "ind",
    NodeType.TREND: "trend",
}


class GraphBuilder:
    def __init__(self, graph: Optional[KnowledgeGraph] = None):
        self.nodes: Dict[str, GraphNode] = {}
        self.edges: List[GraphEdge] = []
        self._edge_keys: Set[Tuple[str, str]] = set()
        self._counter = 0
        if graph is not None:
            for node in graph.nodes:
                self.nodes[node.id] = node
            for edge in graph.edges:
                self.add_edge(edge.source, edge.target, edge.label, edge.strength)
            self._counter = len(self.nodes)

    def _new_id(self, node_type: NodeType) -> str:
        prefix = _ID_PREFIX[node_type]
        while True:
            self._counter += 1
            candidate = f"{prefix}-{self._counter}"
            if candidate not in self.nodes:
                return candidate

    @property
    def root(self) -> Optional[GraphNode]:
        for node in self.nodes.values():
            if node.type is NodeType.ROOT:
                return node
        return None

    def add_root(self, name: str, description: str = "") -> GraphNode:
        node = GraphNode(
            id="root",
            name=name,
            level=0,
            type=NodeType.ROOT,
            color=color_for(NodeType.ROOT, 0),
            description=description,
        )
        self.nodes[node.id] = node
        return node

    def add_node(
        self,
        name: str,
        node_type: NodeType,
        parent: GraphNode,
        description: str = "",
        edge_label: str = CONTAINS,
        strength: float = 1.0,
    ) -> GraphNode:
        """Add a child of ``parent`` together with its parent-of-record edge."""
        level = parent.level + 1
        node = GraphNode(
            id=self._new_id(node_type),
            name=name.strip(),
            level=level,
            parent_id=parent.id,
            type=node_type,
            color=color_for(node_type, level),
            description=description or "",
        )
        self.nodes[node.id] = node
        self.add_edge(parent.id, node.id, edge_label, strength)
        return node

    def has_edge(self, source: str, target: str) -> bool:
        return (source, target) in self._edge_keys

    def add_edge(self, source: str, target: str, label: Optional[str] = None, strength: Optional[float] = None) -> bool:
        """Add an edge unless it is a self-loop or duplicates an existing one."""
        if source == target or (source, target) in self._edge_keys:
            return False
        self.edges.append(GraphEdge(source=source, target=target, label=label, strength=strength))
        self._edge_keys.add((source, target))
        return True

    def find(self, name: str, types: Optional[Tuple[NodeType, ...]] = None) -> Optional[GraphNode]:
        """First node with this normalized name, optionally restricted by type."""
        wanted = normalize_name(name)
        for node in self.nodes.values():
            if node.normalized_name == wanted and (types is None or node.type in types):
                return node
        return None

    def children(self, parent_id: str) -> List[GraphNode]:
        return [n for n in self.nodes.values() if n.parent_id == parent_id]

    def build(self) -> KnowledgeGraph:
        return KnowledgeGraph(nodes=tuple(self.nodes.values()), edges=tuple(self.edges))
