"""Full-text keyword search; an optional signal that never fails a query."""
import logging
from typing import List

from models.chunk import RetrievedChunk
from services.vector_store import VectorStore

logger = logging.getLogger(__name__)


class KeywordSearcher:
    """Delegates ranking to the store's full-text index."""

    def __init__(self, vector_store: VectorStore):
        self.vector_store = vector_store

    def search(self, query: str, file_ids: List[str], top_k: int) -> List[RetrievedChunk]:
        """
        Rank chunks of ``file_ids`` by full-text relevance.

        Results carry ``keyword_score`` (the index rank), ``similarity=0`` and
        ``retrieval_method=keyword``. Empty input or an index failure gives
        an empty list.
        """
        if not query or not query.strip() or not file_ids or top_k <= 0:
            return []

        try:
            results = self.vector_store.keyword_search(query, list(file_ids), top_k)
        except RuntimeError as e:
            logger.error(f"Keyword search failed, continuing without keyword signal: {e}")
            return []

        allowed = set(file_ids)
        results = [chunk for chunk in results if chunk.file_id in allowed]
        logger.debug(f"Keyword search returned {len(results)} chunks")
        return results[:top_k]
