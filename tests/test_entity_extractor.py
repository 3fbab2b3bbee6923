"""Unit tests for EntityExtractor."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from unittest.mock import Mock, patch
from services.entity_extractor import (
    EntityExtractor,
    combine_chunks,
    first_mention_name,
    mention_context,
    normalize_relationship_type,
)
from services.llm_client import LLMResponse, LLMError, LLMClientError
from models.entity import EntityType, ExtractedEntity


def llm_response(text):
    return LLMResponse(text=text, tokens_input=10, tokens_output=10, latency_ms=5, model_used="test-model")


def api_error(code="RATE_LIMIT_ERROR"):
    return LLMClientError(LLMError(code=code, message="boom", details={}))


class TestEntityExtractor:
    """Test suite for EntityExtractor class."""

    @pytest.fixture
    def mock_llm_client(self):
        return Mock()

    @pytest.fixture
    def extractor(self, mock_llm_client):
        return EntityExtractor(mock_llm_client, model="test-model", max_retries=2, retry_delay=0)

    def test_extract_from_text(self, extractor, mock_llm_client):
        mock_llm_client.generate.return_value = llm_response(
            '{"entities": [{"name": "Elizabeth Bennet", "type": "character", "aliases": ["Lizzy"]},'
            ' {"name": "Pemberley", "type": "location"}],'
            ' "relationships": [{"source": "Elizabeth Bennet", "target": "Pemberley", "type": "Visits"}]}'
        )

        result = extractor.extract_from_text("Elizabeth visited Pemberley.")

        assert [e.name for e in result.entities] == ["Elizabeth Bennet", "Pemberley"]
        assert result.entities[0].aliases == ["Lizzy"]
        assert result.entities[1].entity_type == EntityType.LOCATION
        assert result.relationships[0].relationship_type == "visits"

        kwargs = mock_llm_client.generate.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["temperature"] == 0.1
        assert kwargs["json_mode"] is True

    def test_truncated_output_recovered(self, extractor, mock_llm_client):
        mock_llm_client.generate.return_value = llm_response(
            '{"entities": [{"name": "Darcy", "type": "character"}, {"name": "Bing'
        )

        result = extractor.extract_from_text("Darcy and Bingley.")

        assert [e.name for e in result.entities] == ["Darcy"]
        assert result.relationships == []

    def test_transient_errors_retried_then_empty(self, extractor, mock_llm_client):
        mock_llm_client.generate.side_effect = api_error()

        result = extractor.extract_from_text("Some text.")

        assert result.entities == []
        assert mock_llm_client.generate.call_count == 3

    def test_retry_succeeds_after_error(self, extractor, mock_llm_client):
        mock_llm_client.generate.side_effect = [api_error(), llm_response('{"entities": [{"name": "Jane"}]}')]

        result = extractor.extract_from_text("Jane.")

        assert [e.name for e in result.entities] == ["Jane"]

    @pytest.mark.parametrize("code", ["AUTHENTICATION_ERROR", "API_ERROR", "UNKNOWN_ERROR"])
    def test_permanent_errors_not_retried(self, extractor, mock_llm_client, code):
        mock_llm_client.generate.side_effect = api_error(code)

        result = extractor.extract_from_text("Some text.")

        assert result.entities == []
        assert mock_llm_client.generate.call_count == 1

    @patch("services.entity_extractor.time.sleep")
    def test_retry_delay_doubles(self, mock_sleep, mock_llm_client):
        extractor = EntityExtractor(mock_llm_client, max_retries=3, retry_delay=0.5)
        mock_llm_client.generate.side_effect = [
            api_error("TIMEOUT_ERROR"),
            api_error("RATE_LIMIT_ERROR"),
            api_error("TIMEOUT_ERROR"),
            llm_response('{"entities": [{"name": "Jane"}]}'),
        ]

        result = extractor.extract_from_text("Jane.")

        assert [e.name for e in result.entities] == ["Jane"]
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0, 2.0]

    def test_garbage_output_gives_empty_result(self, extractor, mock_llm_client):
        mock_llm_client.generate.return_value = llm_response("I could not find any entities.")

        result = extractor.extract_from_text("Some text.")

        assert result.entities == [] and result.relationships == []
        assert mock_llm_client.generate.call_count == 1

    def test_blank_text_skips_llm(self, extractor, mock_llm_client):
        assert extractor.extract_from_text("   ").entities == []
        assert extractor.extract_from_batch([]).entities == []
        mock_llm_client.generate.assert_not_called()

    def test_extract_from_batch_tags_chunks(self, extractor, mock_llm_client):
        mock_llm_client.generate.return_value = llm_response('{"entities": []}')

        extractor.extract_from_batch([
            {"id": "c1", "chunk_index": 0, "content": "First."},
            {"id": "c2", "chunk_index": 1, "content": "Second."},
        ])

        prompt = mock_llm_client.generate.call_args.kwargs["prompt"]
        assert "[Chunk 0]\nFirst." in prompt
        assert "[Chunk 1]\nSecond." in prompt

    def test_extract_from_query(self, extractor, mock_llm_client):
        mock_llm_client.generate.return_value = llm_response('{"entities": ["Darcy", "darcy", " Pemberley ", 3]}')

        assert extractor.extract_from_query("Who is Darcy at Pemberley?") == ["Darcy", "Pemberley"]
        kwargs = mock_llm_client.generate.call_args.kwargs
        assert kwargs["temperature"] == 0
        assert kwargs["max_tokens"] == 200

    def test_extract_from_query_failure_returns_empty(self, extractor, mock_llm_client):
        mock_llm_client.generate.side_effect = api_error()
        assert extractor.extract_from_query("Who is Darcy?") == []

        mock_llm_client.generate.side_effect = None
        mock_llm_client.generate.return_value = llm_response('{"entities": "Darcy"}')
        assert extractor.extract_from_query("Who is Darcy?") == []


class TestValidation:
    """Tests for LLM payload validation."""

    def test_invalid_entities_dropped_and_unknown_type_defaulted(self):
        entities = EntityExtractor.validate_entities([
            {"name": "Valid", "type": "spaceship", "aliases": ["V", 7, ""]},
            {"name": ""},
            {"type": "location"},
            "just a string",
            {"name": 42},
        ])

        assert len(entities) == 1
        assert entities[0].entity_type == EntityType.CHARACTER
        assert entities[0].aliases == ["V"]

    def test_non_list_payloads(self):
        assert EntityExtractor.validate_entities(None) == []
        assert EntityExtractor.validate_relationships({"source": "a"}) == []

    def test_invalid_relationships_dropped(self):
        relationships = EntityExtractor.validate_relationships([
            {"source": "A", "target": "B", "type": "knows"},
            {"source": "A", "target": "a", "type": "is"},
            {"source": "A", "target": "B"},
            {"source": "", "target": "B", "type": "knows"},
        ])

        assert [(r.source, r.target) for r in relationships] == [("A", "B")]

    def test_find_mentioned_entities_uses_aliases(self):
        entities = [
            ExtractedEntity(name="Elizabeth Bennet", aliases=["Lizzy"]),
            ExtractedEntity(name="Darcy"),
        ]

        assert EntityExtractor.find_mentioned_entities("Lizzy laughed.", entities) == ["Elizabeth Bennet"]


class TestHelpers:

    def test_combine_chunks(self):
        combined = combine_chunks([
            {"chunk_index": 3, "content": "A"},
            {"chunk_index": 4, "content": "B"},
        ])
        assert combined == "[Chunk 3]\nA\n\n---\n\n[Chunk 4]\nB"

    def test_normalize_relationship_type(self):
        assert normalize_relationship_type("  Works At ") == "works_at"

    def test_mention_context_window(self):
        content = "x" * 100 + "Darcy" + "y" * 100
        context = mention_context(content, "darcy")
        assert context == "x" * 50 + "Darcy" + "y" * 50
        assert mention_context("nothing here", "Darcy") == ""

    def test_first_mention_name_prefers_present_alias(self):
        entity = ExtractedEntity(name="Elizabeth Bennet", aliases=["Lizzy"])
        assert first_mention_name("Lizzy smiled.", entity) == "Lizzy"
        assert first_mention_name("Nobody.", entity) is None
