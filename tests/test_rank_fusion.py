"""Unit tests for reciprocal rank fusion and entity boosting."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from services.rank_fusion import reciprocal_rank_fusion, apply_entity_boost
from models.chunk import RetrievedChunk, RetrievalMethod
from models.entity import EntityQueryExpansion
from models.search import HybridSearchConfig


def make_chunk(chunk_id, similarity=0.0, file_id="f1", method=RetrievalMethod.SEMANTIC, keyword_score=None):
    return RetrievedChunk(
        id=chunk_id,
        content=f"content of {chunk_id}",
        filename="doc.pdf",
        file_id=file_id,
        similarity=similarity,
        retrieval_method=method,
        keyword_score=keyword_score,
    )


def keyword_chunk(chunk_id, rank, file_id="f1"):
    return make_chunk(chunk_id, 0.0, file_id, RetrievalMethod.KEYWORD, keyword_score=rank)


class TestReciprocalRankFusion:
    """Test suite for reciprocal_rank_fusion."""

    @pytest.fixture
    def config(self):
        return HybridSearchConfig(semantic_weight=0.8, keyword_weight=0.2, rrf_k=60)

    def test_chunk_in_both_lists_beats_semantic_only(self, config):
        """Rank 1 in both lists scores 0.8/61 + 0.2/61 and outranks semantic-only rank 1."""
        both = reciprocal_rank_fusion([make_chunk("a", 0.9)], [keyword_chunk("a", 0.7)], config, top_k=10)
        semantic_only = reciprocal_rank_fusion([make_chunk("a", 0.9)], [], config, top_k=10)

        assert both[0].combined_score == pytest.approx(0.8 / 61 + 0.2 / 61)
        assert both[0].combined_score == pytest.approx(0.01639, abs=1e-5)
        assert semantic_only[0].combined_score == pytest.approx(0.8 / 61 + 0.2 / (60 + 3 * 10))
        assert both[0].combined_score > semantic_only[0].combined_score

    def test_retrieval_method_tags(self, config):
        """Chunks are tagged by the lists they appeared in."""
        semantic = [make_chunk("a", 0.9), make_chunk("b", 0.8)]
        keyword = [keyword_chunk("b", 0.5), keyword_chunk("c", 0.4)]

        results = {c.id: c for c in reciprocal_rank_fusion(semantic, keyword, config, top_k=10)}

        assert results["a"].retrieval_method == RetrievalMethod.SEMANTIC
        assert results["b"].retrieval_method == RetrievalMethod.HYBRID
        assert results["c"].retrieval_method == RetrievalMethod.KEYWORD

    def test_hybrid_chunk_keeps_similarity_and_keyword_score(self, config):
        results = reciprocal_rank_fusion([make_chunk("a", 0.9)], [keyword_chunk("a", 0.7)], config)

        assert results[0].similarity == 0.9
        assert results[0].keyword_score == 0.7

    def test_keyword_only_chunk_has_no_absence_term(self, config):
        """A keyword-only chunk scores only its keyword term."""
        results = reciprocal_rank_fusion([], [keyword_chunk("c", 0.4)], config, top_k=5)
        assert results[0].combined_score == pytest.approx(0.2 / 61)

    def test_no_duplicates_and_sorted(self, config):
        semantic = [make_chunk("a", 0.9), make_chunk("b", 0.8), make_chunk("a", 0.9)]
        keyword = [keyword_chunk("b", 0.5), keyword_chunk("b", 0.5)]

        results = reciprocal_rank_fusion(semantic, keyword, config, top_k=10)

        ids = [c.id for c in results]
        assert sorted(ids) == ["a", "b"]
        scores = [c.combined_score for c in results]
        assert scores == sorted(scores, reverse=True)

    def test_top_k_truncates(self, config):
        semantic = [make_chunk(f"s{i}", 0.9 - i * 0.01) for i in range(10)]
        results = reciprocal_rank_fusion(semantic, [], config, top_k=3)
        assert [c.id for c in results] == ["s0", "s1", "s2"]

    def test_zero_top_k_returns_empty(self, config):
        assert reciprocal_rank_fusion([make_chunk("a", 0.9)], [], config, top_k=0) == []

    def test_default_config_used(self):
        results = reciprocal_rank_fusion([make_chunk("a", 0.9)], [], None, top_k=1)
        assert len(results) == 1
        assert results[0].combined_score > 0

    def test_negative_weights_rejected(self):
        with pytest.raises(ValueError):
            HybridSearchConfig(semantic_weight=-0.1)


class TestEntityBoost:
    """Test suite for apply_entity_boost."""

    def test_boosted_chunk_moves_up(self):
        semantic = [make_chunk("a", 0.80), make_chunk("b", 0.70)]
        expansion = EntityQueryExpansion(entity_chunk_ids=["b"])

        results = apply_entity_boost(semantic, expansion, top_k=10)

        assert [c.id for c in results] == ["b", "a"]
        assert results[0].similarity == pytest.approx(0.85)
        assert results[0].combined_score == pytest.approx(0.85)
        assert results[0].retrieval_method == RetrievalMethod.HYBRID
        assert results[1].retrieval_method == RetrievalMethod.SEMANTIC

    def test_similarity_capped_at_one(self):
        semantic = [make_chunk("a", 0.95), make_chunk("b", 0.99)]
        expansion = EntityQueryExpansion(entity_chunk_ids=["a"])

        results = apply_entity_boost(semantic, expansion, top_k=10)

        assert results[0].id == "a"
        assert results[0].similarity == 1.0
        assert results[0].combined_score == pytest.approx(1.10)

    def test_entity_only_chunks_injected_at_base_similarity(self):
        semantic = [make_chunk("a", 0.60), make_chunk("b", 0.40)]
        expansion = EntityQueryExpansion(
            entity_chunk_ids=["x"],
            entity_chunks=[make_chunk("x", 0.0)],
        )

        results = apply_entity_boost(semantic, expansion, top_k=10)

        assert [c.id for c in results] == ["a", "x", "b"]
        injected = results[1]
        assert injected.similarity == 0.5
        assert injected.retrieval_method == RetrievalMethod.HYBRID

    def test_injected_chunks_scoped_to_files(self):
        expansion = EntityQueryExpansion(
            entity_chunk_ids=["x", "y"],
            entity_chunks=[make_chunk("x", file_id="f1"), make_chunk("y", file_id="other")],
        )

        results = apply_entity_boost([], expansion, top_k=10, file_ids=["f1"])

        assert [c.id for c in results] == ["x"]

    def test_empty_expansion_keeps_semantic_order(self):
        semantic = [make_chunk("a", 0.9), make_chunk("b", 0.5)]

        results = apply_entity_boost(semantic, EntityQueryExpansion(), top_k=1)

        assert [c.id for c in results] == ["a"]
        assert results[0].combined_score == 0.9
