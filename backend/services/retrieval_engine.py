"""Retrieval engine orchestrating concurrent searchers and rank fusion."""
import asyncio
import logging
from typing import List, Optional

from config import DEFAULT_TOP_K
from models.chunk import RetrievedChunk
from models.entity import EntityQueryExpansion
from models.search import HybridSearchConfig, SearchMode
from services.entity_expander import EntityExpander
from services.entity_store import EntityStore
from services.keyword_searcher import KeywordSearcher
from services.rank_fusion import apply_entity_boost, reciprocal_rank_fusion
from services.semantic_searcher import RetrievalError, SemanticSearcher

logger = logging.getLogger(__name__)

# Candidates fetched per branch, as a multiple of top_k, before fusion
CANDIDATE_MULTIPLIER = 2


class RetrievalEngine:
    """
    Run the semantic branch alongside an optional branch (keyword or entity)
    and merge them.

    Both branches are joined: a failed optional branch is logged and
    contributes nothing; a failed semantic branch fails the query with
    RetrievalError.
    """

    def __init__(
        self,
        semantic_searcher: SemanticSearcher,
        keyword_searcher: KeywordSearcher,
        entity_expander: Optional[EntityExpander] = None,
        entity_store: Optional[EntityStore] = None,
        hybrid_config: Optional[HybridSearchConfig] = None
    ):
        """
        Initialize the retrieval engine.

        Args:
            semantic_searcher: Vector search with in-process fallback
            keyword_searcher: Full-text search
            entity_expander: Entity graph expansion (entity modes disabled if None)
            entity_store: Used to check whether any file has entities ready
            hybrid_config: Default RRF weights (config.py values if None)
        """
        self.semantic_searcher = semantic_searcher
        self.keyword_searcher = keyword_searcher
        self.entity_expander = entity_expander
        self.entity_store = entity_store
        self.hybrid_config = hybrid_config or HybridSearchConfig()
        logger.info("Initialized RetrievalEngine")

    async def search(
        self,
        query: str,
        file_ids: List[str],
        top_k: int = DEFAULT_TOP_K,
        mode: SearchMode = SearchMode.AUTO,
        config: Optional[HybridSearchConfig] = None
    ) -> List[RetrievedChunk]:
        """
        Retrieve the top_k chunks for a query.

        AUTO uses entity-boosted search when any file has entity extraction
        enabled and ready, and plain semantic search otherwise.

        Args:
            query: User question
            file_ids: Files the caller may search (already authorised)
            top_k: Number of chunks to return
            mode: Search strategy
            config: Per-call RRF weights for HYBRID mode

        Returns:
            Ranked chunks, best first; empty for empty input

        Raises:
            RetrievalError: If no semantic signal can be produced
        """
        if not query or not query.strip() or not file_ids or top_k <= 0:
            logger.warning("Empty query or file set, returning empty results")
            return []

        query = query.strip()
        if mode == SearchMode.HYBRID:
            return await self.hybrid_search(query, file_ids, top_k, config)
        if mode == SearchMode.ENTITY:
            return await self.entity_boosted_search(query, file_ids, top_k)
        if mode == SearchMode.AUTO and await self._entities_ready(file_ids):
            return await self.entity_boosted_search(query, file_ids, top_k)
        return await self.semantic_search(query, file_ids, top_k)

    async def semantic_search(self, query: str, file_ids: List[str], top_k: int) -> List[RetrievedChunk]:
        results = await asyncio.to_thread(self.semantic_searcher.search, query, file_ids, top_k)
        logger.info(f"Semantic search returned {len(results)} chunks")
        return results

    async def hybrid_search(
        self,
        query: str,
        file_ids: List[str],
        top_k: int,
        config: Optional[HybridSearchConfig] = None
    ) -> List[RetrievedChunk]:
        """Semantic and keyword search in parallel, merged with RRF."""
        candidates = top_k * CANDIDATE_MULTIPLIER
        semantic, keyword = await asyncio.gather(
            asyncio.to_thread(self.semantic_searcher.search, query, file_ids, candidates),
            asyncio.to_thread(self.keyword_searcher.search, query, file_ids, candidates),
            return_exceptions=True
        )
        semantic = self._required(semantic)
        keyword = self._optional(keyword, "keyword", [])

        logger.info(f"Hybrid search: {len(semantic)} semantic, {len(keyword)} keyword results")
        return reciprocal_rank_fusion(semantic, keyword, config or self.hybrid_config, top_k)

    async def entity_boosted_search(self, query: str, file_ids: List[str], top_k: int) -> List[RetrievedChunk]:
        """Semantic search and entity expansion in parallel, merged by boosting."""
        if self.entity_expander is None:
            return await self.semantic_search(query, file_ids, top_k)

        candidates = top_k * CANDIDATE_MULTIPLIER
        semantic, expansion = await asyncio.gather(
            asyncio.to_thread(self.semantic_searcher.search, query, file_ids, candidates),
            asyncio.to_thread(self.entity_expander.expand, query, file_ids),
            return_exceptions=True
        )
        semantic = self._required(semantic)
        expansion = self._optional(expansion, "entity", EntityQueryExpansion())

        if expansion.is_empty:
            logger.info("No entity chunks, using semantic ranking")
            return semantic[:top_k]
        return apply_entity_boost(semantic, expansion, top_k, file_ids=file_ids)

    async def _entities_ready(self, file_ids: List[str]) -> bool:
        if self.entity_expander is None or self.entity_store is None:
            return False
        try:
            return await asyncio.to_thread(self.entity_store.any_file_has_entities, file_ids)
        except RuntimeError as e:
            logger.warning(f"Could not check entity status, using semantic search: {e}")
            return False

    @staticmethod
    def _required(result):
        if isinstance(result, RetrievalError):
            raise result
        if isinstance(result, BaseException):
            raise RetrievalError(f"Semantic search failed: {result}") from result
        return result

    @staticmethod
    def _optional(result, branch: str, default):
        if isinstance(result, BaseException):
            logger.error(f"{branch} branch failed, continuing without it: {result}")
            return default
        return result
