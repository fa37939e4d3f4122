"""Firestore-backed graph store.

Each session's graph is one document in the configured collection. A single
``set()`` overwrites the previous document, which makes the replace atomic:
readers see either the old graph or the new one, never a mix.
"""

from google.api_core import exceptions as gcp_exceptions
from google.cloud.firestore_v1.async_client import AsyncClient
import structlog

from libs.common.errors import PersistenceError
from libs.models.firestore import GraphDocument
from libs.models.graph import KnowledgeGraph
from libs.storage.graph_store import ensure_persistable

logger = structlog.get_logger(__name__)


class FirestoreGraphStore:
    def __init__(self, client: AsyncClient, collection: str = "role_graphs"):
        self.client = client
        self.collection = collection

    async def replace_graph(self, session_id: str, graph: KnowledgeGraph) -> None:
        """Overwrite the session's graph document.

        Args:
            session_id: Session the graph belongs to.
            graph: Reduced, validated graph.

        Raises:
            PersistenceError: The graph has dangling edges or Firestore failed.
        """
        ensure_persistable(session_id, graph)
        document = GraphDocument.from_graph(session_id, graph)
        doc_ref = self.client.collection(self.collection).document(session_id)
        try:
            await doc_ref.set(document.model_dump())
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Firestore graph write failed", session_id=session_id, error=str(e))
            raise PersistenceError(f"Failed to persist graph for session {session_id}") from e

        logger.info("Graph stored in Firestore", session_id=session_id, nodes=document.node_count)

    async def get_graph(self, session_id: str) -> KnowledgeGraph | None:
        doc_ref = self.client.collection(self.collection).document(session_id)
        try:
            snapshot = await doc_ref.get()
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Firestore graph read failed", session_id=session_id, error=str(e))
            raise PersistenceError(f"Failed to read graph for session {session_id}") from e

        if not snapshot.exists:
            return None
        return GraphDocument.model_validate(snapshot.to_dict()).to_graph()

    async def delete_graph(self, session_id: str) -> None:
        await self.client.collection(self.collection).document(session_id).delete()
