"""Graph persistence backends."""

from libs.storage.graph_store import GraphStore, InMemoryGraphStore, build_graph_store

__all__ = ["GraphStore", "InMemoryGraphStore", "build_graph_store"]
