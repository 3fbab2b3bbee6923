"""Unit tests for EntityExpander."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from unittest.mock import Mock
from services.entity_expander import EntityExpander
from models.chunk import RetrievedChunk, RetrievalMethod
from models.entity import Entity, EntityType, RelatedEntity


def entity(entity_id, name, mention_count=1, file_id="f1"):
    return Entity(id=entity_id, file_id=file_id, name=name,
                  entity_type=EntityType.CHARACTER, mention_count=mention_count)


def chunk(chunk_id, file_id="f1"):
    return RetrievedChunk(id=chunk_id, content="text", filename="book.pdf", file_id=file_id,
                          similarity=0.0, retrieval_method=RetrievalMethod.HYBRID)


class TestEntityExpander:
    """Test suite for EntityExpander class."""

    @pytest.fixture
    def mock_extractor(self):
        return Mock()

    @pytest.fixture
    def mock_entity_store(self):
        store = Mock()
        store.get_related_entities.return_value = []
        store.get_chunks_for_entities.return_value = []
        return store

    @pytest.fixture
    def expander(self, mock_extractor, mock_entity_store):
        return EntityExpander(mock_extractor, mock_entity_store)

    def test_no_entities_in_query(self, expander, mock_extractor, mock_entity_store):
        """A query naming no entity gives an empty expansion."""
        mock_extractor.extract_from_query.return_value = []

        expansion = expander.expand("what happens at the end?", ["f1"])

        assert expansion.query_entities == []
        assert expansion.related_entities == []
        assert expansion.entity_chunk_ids == []
        assert expansion.is_empty
        mock_entity_store.find_entities_by_name.assert_not_called()

    def test_no_file_ids_skips_extraction(self, expander, mock_extractor):
        assert expander.expand("Who is Darcy?", []).is_empty
        mock_extractor.extract_from_query.assert_not_called()

    def test_unmatched_names_give_empty_expansion(self, expander, mock_extractor, mock_entity_store):
        mock_extractor.extract_from_query.return_value = ["Gandalf"]
        mock_entity_store.find_entities_by_name.return_value = []

        assert expander.expand("Who is Gandalf?", ["f1"]).is_empty

    def test_expansion_collects_related_chunks(self, expander, mock_extractor, mock_entity_store):
        mock_extractor.extract_from_query.return_value = ["Darcy"]
        mock_entity_store.find_entities_by_name.return_value = [
            entity("e1", "Darcy", mention_count=3),
            entity("e9", "Darcy", mention_count=12),
        ]
        mock_entity_store.get_related_entities.return_value = [
            RelatedEntity(id="e2", name="Pemberley", entity_type=EntityType.LOCATION,
                          relationship_type="owns", direction="outgoing", confidence=1.0)
        ]
        mock_entity_store.get_chunks_for_entities.return_value = [
            chunk("c1"), chunk("c2"), chunk("c1"), chunk("c3", file_id="not-mine")
        ]

        expansion = expander.expand("Who is Darcy?", ["f1"])

        assert [e.id for e in expansion.query_entities] == ["e9"]
        assert [r.name for r in expansion.related_entities] == ["Pemberley"]
        assert expansion.entity_chunk_ids == ["c1", "c2"]
        mock_entity_store.get_related_entities.assert_called_once_with(["e9"], 1)
        mock_entity_store.get_chunks_for_entities.assert_called_once_with(["e9", "e2"])

    def test_traversal_failure_uses_query_entities_only(self, expander, mock_extractor, mock_entity_store):
        mock_extractor.extract_from_query.return_value = ["Darcy"]
        mock_entity_store.find_entities_by_name.return_value = [entity("e1", "Darcy")]
        mock_entity_store.get_related_entities.side_effect = RuntimeError("rpc failed")
        mock_entity_store.get_chunks_for_entities.return_value = [chunk("c1")]

        expansion = expander.expand("Who is Darcy?", ["f1"])

        assert expansion.related_entities == []
        assert expansion.entity_chunk_ids == ["c1"]
        mock_entity_store.get_chunks_for_entities.assert_called_once_with(["e1"])

    def test_lookup_failure_for_one_name_skips_it(self, expander, mock_extractor, mock_entity_store):
        mock_extractor.extract_from_query.return_value = ["Darcy", "Jane"]
        mock_entity_store.find_entities_by_name.side_effect = [
            RuntimeError("timeout"), [entity("e5", "Jane")]
        ]
        mock_entity_store.get_chunks_for_entities.return_value = [chunk("c7")]

        expansion = expander.expand("Darcy and Jane", ["f1"])

        assert [e.name for e in expansion.query_entities] == ["Jane"]
        assert expansion.entity_chunk_ids == ["c7"]
