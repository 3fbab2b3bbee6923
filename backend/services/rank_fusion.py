"""Merge ranked candidate lists into one ranking."""
import logging
from dataclasses import replace
from typing import Dict, List, Optional

from config import ENTITY_BOOST, ENTITY_BASE_SIMILARITY
from models.chunk import RetrievedChunk, RetrievalMethod
from models.entity import EntityQueryExpansion
from models.search import HybridSearchConfig

logger = logging.getLogger(__name__)

# Rank assigned to chunks missing from the keyword list, as a multiple of top_k
KEYWORD_ABSENCE_RANK_FACTOR = 3


def reciprocal_rank_fusion(
    semantic: List[RetrievedChunk],
    keyword: List[RetrievedChunk],
    config: Optional[HybridSearchConfig] = None,
    top_k: int = 10
) -> List[RetrievedChunk]:
    """
    Weighted Reciprocal Rank Fusion of a semantic and a keyword ranking.

    Each chunk scores ``semantic_weight / (rrf_k + rs)`` for its 1-based
    semantic rank plus ``keyword_weight / (rrf_k + rk)`` for its keyword
    rank. A chunk with a semantic rank but no keyword rank gets
    ``keyword_weight / (rrf_k + 3 * top_k)`` in place of the keyword term.

    Chunks in both lists are tagged hybrid and keep their semantic
    similarity plus the keyword score. The fused score is stored in
    ``combined_score``. Ties keep semantic order, then keyword order.

    Args:
        semantic: Semantic results, best first
        keyword: Keyword results, best first
        config: Weights and rrf_k (process defaults if None)
        top_k: Number of results to keep

    Returns:
        Fused ranking of at most top_k chunks
    """
    config = config or HybridSearchConfig()
    if top_k <= 0:
        return []

    semantic_ranks: Dict[str, int] = {}
    keyword_ranks: Dict[str, int] = {}
    merged: Dict[str, RetrievedChunk] = {}

    for rank, chunk in enumerate(semantic, start=1):
        if chunk.id in semantic_ranks:
            continue
        semantic_ranks[chunk.id] = rank
        merged[chunk.id] = replace(chunk, retrieval_method=RetrievalMethod.SEMANTIC)

    for rank, chunk in enumerate(keyword, start=1):
        if chunk.id in keyword_ranks:
            continue
        keyword_ranks[chunk.id] = rank
        existing = merged.get(chunk.id)
        if existing is not None:
            merged[chunk.id] = replace(
                existing,
                retrieval_method=RetrievalMethod.HYBRID,
                keyword_score=chunk.keyword_score
            )
        else:
            merged[chunk.id] = replace(chunk, retrieval_method=RetrievalMethod.KEYWORD)

    absence_term = config.keyword_weight / (config.rrf_k + KEYWORD_ABSENCE_RANK_FACTOR * top_k)

    scored = []
    for chunk_id, chunk in merged.items():
        score = 0.0
        if chunk_id in semantic_ranks:
            score += config.semantic_weight / (config.rrf_k + semantic_ranks[chunk_id])
        if chunk_id in keyword_ranks:
            score += config.keyword_weight / (config.rrf_k + keyword_ranks[chunk_id])
        elif chunk_id in semantic_ranks:
            score += absence_term
        scored.append(replace(chunk, combined_score=score))

    # sorted() is stable: insertion order (semantic, then keyword-only) breaks ties
    scored = sorted(scored, key=lambda c: c.combined_score, reverse=True)[:top_k]

    if scored:
        logger.debug(
            "RRF top scores: " + ", ".join(
                f"{c.retrieval_method.value}={c.combined_score:.4f}" for c in scored[:3]
            )
        )
    return scored


def apply_entity_boost(
    semantic: List[RetrievedChunk],
    expansion: EntityQueryExpansion,
    top_k: int,
    file_ids: Optional[List[str]] = None,
    boost: float = ENTITY_BOOST,
    base_similarity: float = ENTITY_BASE_SIMILARITY
) -> List[RetrievedChunk]:
    """
    Boost semantic hits that mention a query entity and inject entity-only chunks.

    Semantic chunks whose id is in ``expansion.entity_chunk_ids`` gain
    ``boost`` and are tagged hybrid. Chunks known only through the entity
    graph are added with ``base_similarity``. Ordering uses the boosted
    score, kept in ``combined_score``; ``similarity`` itself is capped at 1.0.

    Args:
        semantic: Semantic results, best first
        expansion: Result of EntityExpander.expand
        top_k: Number of results to keep
        file_ids: When given, injected chunks outside these files are dropped

    Returns:
        Re-ranked chunks, at most top_k
    """
    if top_k <= 0:
        return []

    entity_chunk_ids = set(expansion.entity_chunk_ids)
    results: List[RetrievedChunk] = []
    seen = set()
    boosted = 0

    for chunk in semantic:
        if chunk.id in seen:
            continue
        seen.add(chunk.id)
        if chunk.id in entity_chunk_ids:
            score = chunk.similarity + boost
            results.append(replace(
                chunk,
                similarity=min(1.0, score),
                retrieval_method=RetrievalMethod.HYBRID,
                combined_score=score
            ))
            boosted += 1
        else:
            results.append(replace(chunk, combined_score=chunk.similarity))

    allowed = set(file_ids) if file_ids is not None else None
    injected = 0
    for chunk in expansion.entity_chunks:
        if chunk.id in seen or chunk.id not in entity_chunk_ids:
            continue
        if allowed is not None and chunk.file_id not in allowed:
            continue
        seen.add(chunk.id)
        results.append(replace(
            chunk,
            similarity=base_similarity,
            retrieval_method=RetrievalMethod.HYBRID,
            combined_score=base_similarity
        ))
        injected += 1

    logger.info(f"Entity boost: {boosted} boosted, {injected} injected")
    return sorted(results, key=lambda c: c.combined_score, reverse=True)[:top_k]
