"""Pydantic models for Firestore documents.

These models define the structure of the documents stored in Firestore
and are used for data validation and serialization.
"""
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from libs.models.graph import GraphEdge, GraphNode, KnowledgeGraph


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GraphDocument(BaseModel):
    """One session's persisted graph, stored as a single document."""
    session_id: str = Field(..., description="Session the graph belongs to.")
    nodes: list[dict[str, Any]] = Field(default_factory=list, description="Serialized graph nodes.")
    edges: list[dict[str, Any]] = Field(default_factory=list, description="Serialized graph edges.")
    node_count: int = Field(0, ge=0, description="Number of nodes, for listing without decoding.")
    updated_at: datetime = Field(default_factory=_utcnow, description="Timestamp of the last replace.")

    @classmethod
    def from_graph(cls, session_id: str, graph: KnowledgeGraph) -> "GraphDocument":
        payload = graph.to_payload()
        return cls(
            session_id=session_id,
            nodes=payload["nodes"],
            edges=payload["edges"],
            node_count=len(graph.nodes),
        )

    def to_graph(self) -> KnowledgeGraph:
        return KnowledgeGraph(
            nodes=tuple(GraphNode.model_validate(n) for n in self.nodes),
            edges=tuple(GraphEdge.model_validate(e) for e in self.edges),
        )
