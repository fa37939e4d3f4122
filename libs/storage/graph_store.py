"""Graph persistence contract and the in-process store.

Every store has replace-all semantics: writing a session's graph removes
whatever was stored for that session before.
"""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

import structlog

from libs.common.errors import PersistenceError
from libs.models.graph import KnowledgeGraph

logger = structlog.get_logger(__name__)


@runtime_checkable
class GraphStore(Protocol):
    async def replace_graph(self, session_id: str, graph: KnowledgeGraph) -> None:
        ...

    async def get_graph(self, session_id: str) -> KnowledgeGraph | None:
        ...


def ensure_persistable(session_id: str, graph: KnowledgeGraph) -> None:
    """Reject graphs whose edges point at nodes that are not in the graph."""
    dangling = graph.dangling_edges()
    if dangling:
        raise PersistenceError(
            f"Refusing to persist graph for session {session_id}: {len(dangling)} dangling edge(s)"
        )


class InMemoryGraphStore:
    """Lock-protected dict store, used in development and tests."""

    def __init__(self) -> None:
        self._graphs: dict[str, KnowledgeGraph] = {}
        self._lock = asyncio.Lock()

    async def replace_graph(self, session_id: str, graph: KnowledgeGraph) -> None:
        ensure_persistable(session_id, graph)
        async with self._lock:
            self._graphs.pop(session_id, None)
            self._graphs[session_id] = graph
        logger.info("Graph replaced", session_id=session_id, nodes=len(graph.nodes), edges=len(graph.edges))

    async def get_graph(self, session_id: str) -> KnowledgeGraph | None:
        async with self._lock:
            return self._graphs.get(session_id)

    async def delete_graph(self, session_id: str) -> None:
        async with self._lock:
            self._graphs.pop(session_id, None)


def build_graph_store(settings) -> GraphStore:
    """Pick the store backend named in settings."""
    if settings.graph_store_backend == "firestore":
        from libs.firebase.client import get_firestore_async_client
        from libs.firestore.graphs import FirestoreGraphStore

        return FirestoreGraphStore(get_firestore_async_client(), collection=settings.firestore_collection)
    return InMemoryGraphStore()
