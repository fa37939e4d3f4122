"""Graph data model shared by the pipeline, the reducer and the graph stores.

Nodes and edges are frozen pydantic models; a ``KnowledgeGraph`` is an
immutable snapshot, so every stage that changes the graph produces a new one.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_EDGE_STRENGTH = 0.5

ROOT_COLOR = "#4C51BF"
INDUSTRY_COLOR = "#3b82f6"
KEYWORD_COLOR = "#10b981"
TREND_COLOR = "#8b5cf6"
LEVEL_COLORS = {1: "#f97316", 2: "#ec4899", 3: "#eab308"}
DEFAULT_COLOR = "#6b7280"


class NodeType(str, Enum):
    ROOT = "root"
    CATEGORY = "category"
    SUBCATEGORY = "subcategory"
    SKILL = "skill"
    KEYWORD = "keyword"
    INDUSTRY = "industry"
    TREND = "trend"


def normalize_name(name: str) -> str:
    """Case-folded, whitespace-collapsed form used for dedup and matching."""
    return " ".join(name.split()).casefold()


def color_for(node_type: NodeType, level: int) -> str:
    """Display color for a node; informational only."""
    if node_type is NodeType.ROOT:
        return ROOT_COLOR
    if node_type is NodeType.INDUSTRY:
        return INDUSTRY_COLOR
    if node_type is NodeType.KEYWORD:
        return KEYWORD_COLOR
    if node_type is NodeType.TREND:
        return TREND_COLOR
    return LEVEL_COLORS.get(level, DEFAULT_COLOR)


class _GraphModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class GraphNode(_GraphModel):
    """A single node of the role graph."""

    id: str = Field(..., min_length=1, description="Identifier, unique within a session graph")
    name: str = Field(..., min_length=1, description="Display name")
    level: int = Field(..., ge=0, description="Depth below the root")
    parent_id: str | None = Field(default=None, description="Parent-of-record node id")
    type: NodeType = Field(..., description="Node kind")
    color: str = Field(default=DEFAULT_COLOR, description="Display color")
    description: str = Field(default="", description="Short description")

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)


class GraphEdge(_GraphModel):
    """A directed edge between two nodes."""

    source: str = Field(..., description="Source node id")
    target: str = Field(..., description="Target node id")
    label: str | None = Field(default=None, description="Relationship label")
    strength: float = Field(default=DEFAULT_EDGE_STRENGTH, ge=0.0, le=1.0, description="Relationship strength")

    @field_validator("strength", mode="before")
    @classmethod
    def clamp_strength(cls, v):
        """Accept 1-10 scale strengths and clamp into [0, 1]."""
        if v is None:
            return DEFAULT_EDGE_STRENGTH
        try:
            value = float(v)
        except (TypeError, ValueError):
            return DEFAULT_EDGE_STRENGTH
        if value > 1.0:
            value = value / 10.0
        return min(max(value, 0.0), 1.0)

    @property
    def key(self) -> tuple[str, str]:
        return (self.source, self.target)


class KnowledgeGraph(_GraphModel):
    """Immutable node/edge snapshot."""

    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()

    @property
    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    @property
    def root(self) -> GraphNode | None:
        for node in self.nodes:
            if node.type is NodeType.ROOT:
                return node
        return None

    def node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def children_of(self, node_id: str) -> list[GraphNode]:
        return [n for n in self.nodes if n.parent_id == node_id]

    def find_by_name(self, name: str, level: int | None = None) -> GraphNode | None:
        wanted = normalize_name(name)
        for node in self.nodes:
            if node.normalized_name == wanted and (level is None or node.level == level):
                return node
        return None

    def dangling_edges(self) -> list[GraphEdge]:
        ids = self.node_ids
        return [e for e in self.edges if e.source not in ids or e.target not in ids]

    def replace(self, nodes: Iterable[GraphNode] | None = None, edges: Iterable[GraphEdge] | None = None) -> "KnowledgeGraph":
        return KnowledgeGraph(
            nodes=tuple(self.nodes if nodes is None else nodes),
            edges=tuple(self.edges if edges is None else edges),
        )

    def to_payload(self) -> dict:
        """camelCase JSON-ready dict for the wire and the stores."""
        return self.model_dump(mode="json", by_alias=True)
