"""Semantic (vector similarity) search over a caller-scoped set of files."""
import logging
from dataclasses import replace
from typing import List

from models.chunk import RetrievedChunk
from services.embedding_model import EmbeddingModel
from services.similarity import cosine_similarity, parse_embedding
from services.vector_store import VectorStore, row_to_retrieved_chunk

logger = logging.getLogger(__name__)


class RetrievalError(RuntimeError):
    """A query cannot produce any semantic signal (e.g. embedding failed)."""


class SemanticSearcher:
    """Embeds the query and ranks chunks by cosine similarity."""

    def __init__(self, embedding_model: EmbeddingModel, vector_store: VectorStore):
        self.embedding_model = embedding_model
        self.vector_store = vector_store

    def search(self, query: str, file_ids: List[str], top_k: int) -> List[RetrievedChunk]:
        """
        Rank chunks of ``file_ids`` by similarity to the query.

        The vector index is tried first. When it is unavailable every chunk of
        the files is fetched and scored in-process. Rows outside ``file_ids``
        are dropped whatever the index returns.

        Args:
            query: User query text
            file_ids: Files the caller may search
            top_k: Maximum number of results

        Returns:
            Chunks sorted by similarity, descending, at most top_k

        Raises:
            RetrievalError: If the query cannot be embedded, or both the
                index and the fallback scan fail
        """
        if not query or not query.strip() or not file_ids or top_k <= 0:
            return []

        try:
            query_embedding = self.embedding_model.embed_text(query)
        except Exception as e:
            logger.error(f"Query embedding failed: {e}")
            raise RetrievalError(f"Failed to embed query: {e}") from e

        allowed = set(file_ids)
        try:
            results = self.vector_store.search(query_embedding, list(file_ids), top_k)
        except RuntimeError as e:
            logger.warning(f"Vector index unavailable, falling back to in-process scan: {e}")
            results = self._fallback_search(query_embedding, list(file_ids))

        results = [chunk for chunk in results if chunk.file_id in allowed]
        results.sort(key=lambda chunk: chunk.similarity, reverse=True)
        return results[:top_k]

    def _fallback_search(self, query_embedding: List[float], file_ids: List[str]) -> List[RetrievedChunk]:
        """Score every chunk of the files against the query embedding."""
        try:
            rows = self.vector_store.fetch_file_chunks(file_ids)
        except RuntimeError as e:
            raise RetrievalError(f"Semantic search unavailable: {e}") from e

        results = []
        skipped = 0
        for row in rows:
            embedding = parse_embedding(row.get("embedding"))
            if embedding is None:
                skipped += 1
                continue
            chunk = row_to_retrieved_chunk(row)
            results.append(replace(chunk, similarity=cosine_similarity(query_embedding, embedding)))

        if skipped:
            logger.warning(f"Skipped {skipped} chunks without a usable embedding")
        logger.info(f"Fallback scan scored {len(results)} chunks")
        return results
