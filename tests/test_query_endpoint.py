"""Integration tests for the query and entity endpoints."""
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, Mock, patch
import asyncio
import json
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))


def make_chunk(chunk_id="c1", content="The treaty was signed in 1648.", similarity=0.82):
    from models.chunk import RetrievedChunk
    return RetrievedChunk(
        id=chunk_id,
        content=content,
        filename="history.pdf",
        file_id="f1",
        similarity=similarity,
        page=4,
        chunk_index=2,
    )


def parse_events(body):
    """Split an SSE body into decoded event payloads."""
    return [
        json.loads(block[len("data: "):])
        for block in body.split("\n\n")
        if block.startswith("data: ")
    ]


@pytest.fixture
def client():
    """Create a test client with mocked services."""
    # Import after path is set
    from main import app
    from services.context_assembler import ContextAssembler
    from services.rate_limiter import RateLimiter

    # Mock the startup event to avoid initializing real services
    with patch('main.startup_event'):
        client = TestClient(app)

        # Manually set the global services to mocks
        import main
        main.vector_store = Mock()
        main.vector_store.get_files.return_value = [{"id": "f1", "user_id": "u1", "status": "ready"}]
        main.entity_store = Mock()
        main.retrieval_engine = Mock()
        main.retrieval_engine.search = AsyncMock(return_value=[make_chunk()])
        main.context_assembler = ContextAssembler()
        main.llm_client = Mock()
        main.extraction_manager = Mock()
        main.rate_limiter = RateLimiter({"query": (60, 5), "entities": (60, 5), "default": (60, 100)})
        main.tiktoken_encoder = Mock()
        main.tiktoken_encoder.encode.return_value = [1, 2, 3]

        yield client


@pytest.fixture
def llm_answer(client):
    import main
    from services.llm_client import LLMResponse

    main.llm_client.generate.return_value = LLMResponse(
        text="It was signed in 1648 [Source: history.pdf, Page 4, Chunk 2].",
        tokens_input=300,
        tokens_output=20,
        latency_ms=400,
        model_used="llama-3.3-70b-versatile"
    )
    return main.llm_client


class TestQueryEndpoint:
    """Tests for POST /query."""

    def test_successful_query(self, client, llm_answer):
        response = client.post(
            "/query",
            json={"query": "When was the treaty signed?", "file_ids": ["f1"]},
            headers={"X-User-Id": "u1"}
        )

        assert response.status_code == 200
        data = response.json()
        assert "1648" in data["content"]
        assert len(data["sources"]) == 1
        source = data["sources"][0]
        assert source["id"] == "c1"
        assert source["title"] == "history.pdf, Page 4"
        assert source["url"] == "file://history.pdf#page=4"
        assert source["score"] == 0.82
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

        kwargs = llm_answer.generate.call_args.kwargs
        assert "[Source: history.pdf, Page 4, Chunk 2]" in kwargs["prompt"]
        assert kwargs["max_tokens"] == 1024
        assert kwargs["temperature"] == 0.3

    def test_detailed_mode_uses_larger_limits(self, client, llm_answer):
        import main

        client.post("/query", json={"query": "Explain the treaty", "file_ids": ["f1"], "mode": "detailed"})

        assert main.retrieval_engine.search.call_args.args[2] == 25
        assert llm_answer.generate.call_args.kwargs["max_tokens"] == 4096

    def test_deep_mode_retrieves_more_but_answers_short(self, client, llm_answer):
        import main

        client.post("/query", json={"query": "Trace the treaty", "file_ids": ["f1"], "mode": "deep"})

        assert main.retrieval_engine.search.call_args.args[2] == 25
        assert llm_answer.generate.call_args.kwargs["max_tokens"] == 1024

    def test_search_mode_forwarded(self, client, llm_answer):
        import main
        from models.search import SearchMode

        client.post("/query", json={"query": "treaty", "file_ids": ["f1"], "search_mode": "hybrid"})

        assert main.retrieval_engine.search.call_args.args[3] == SearchMode.HYBRID

    def test_no_chunks_returns_no_content_answer(self, client):
        import main
        from services.prompts import NO_CONTENT_ANSWER
        main.retrieval_engine.search.return_value = []

        response = client.post("/query", json={"query": "Unrelated?", "file_ids": ["f1"]})

        assert response.status_code == 200
        assert response.json() == {"content": NO_CONTENT_ANSWER, "sources": []}
        main.llm_client.generate.assert_not_called()

    def test_empty_query_rejected(self, client):
        response = client.post("/query", json={"query": "   ", "file_ids": ["f1"]})
        assert response.status_code == 400

    def test_missing_file_ids_rejected(self, client):
        response = client.post("/query", json={"query": "Hello?", "file_ids": []})
        assert response.status_code == 400

    def test_unknown_file_returns_404(self, client):
        import main
        main.vector_store.get_files.return_value = []

        response = client.post("/query", json={"query": "Hello?", "file_ids": ["missing"]})

        assert response.status_code == 404

    def test_foreign_file_returns_404(self, client):
        response = client.post(
            "/query",
            json={"query": "Hello?", "file_ids": ["f1"]},
            headers={"X-User-Id": "someone-else"}
        )
        assert response.status_code == 404

    def test_unready_file_returns_409(self, client):
        import main
        main.vector_store.get_files.return_value = [{"id": "f1", "user_id": "u1", "status": "processing"}]

        response = client.post("/query", json={"query": "Hello?", "file_ids": ["f1"]})

        assert response.status_code == 409

    def test_rate_limit_returns_429(self, client):
        import main
        main.retrieval_engine.search.return_value = []

        for _ in range(5):
            assert client.post("/query", json={"query": "Hi?", "file_ids": ["f1"]}).status_code == 200
        response = client.post("/query", json={"query": "Hi?", "file_ids": ["f1"]})

        assert response.status_code == 429
        assert "Retry-After" in response.headers
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_retrieval_failure_returns_502(self, client):
        import main
        from services.semantic_searcher import RetrievalError
        main.retrieval_engine.search.side_effect = RetrievalError("embedding service down")

        response = client.post("/query", json={"query": "Hello?", "file_ids": ["f1"]})

        assert response.status_code == 502

    def test_retrieval_timeout_returns_504(self, client):
        import main

        async def slow_search(*args, **kwargs):
            await asyncio.sleep(1)
            return []

        main.retrieval_engine.search = slow_search
        with patch('main.QUERY_TIMEOUT_SECONDS', 0.01):
            response = client.post("/query", json={"query": "Hello?", "file_ids": ["f1"]})

        assert response.status_code == 504

    def test_llm_error_returns_503(self, client):
        import main
        from services.llm_client import LLMError, LLMClientError
        main.llm_client.generate.side_effect = LLMClientError(LLMError(
            code="RATE_LIMIT_ERROR",
            message="Rate limit exceeded. Please try again in a few moments.",
            details={"retry_after": 60}
        ))

        response = client.post("/query", json={"query": "Hello?", "file_ids": ["f1"]})

        assert response.status_code == 503
        assert response.json()["detail"]["error"]["code"] == "RATE_LIMIT_ERROR"


class TestQueryStreamEndpoint:
    """Tests for POST /query/stream."""

    def test_stream_emits_sources_tokens_done(self, client):
        import main
        main.llm_client.generate_stream.return_value = iter([
            {"type": "token", "content": "Signed "},
            {"type": "token", "content": "in 1648."},
            {"type": "metadata", "data": {"tokens_input": 300, "tokens_output": 2,
                                          "latency_ms": 50, "model_used": "m"}},
        ])

        response = client.post("/query/stream", json={"query": "When?", "file_ids": ["f1"]})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_events(response.text)
        assert [e["type"] for e in events] == ["sources", "token", "token", "done"]
        assert events[0]["sources"][0]["id"] == "c1"
        assert events[1]["content"] + events[2]["content"] == "Signed in 1648."
        assert events[3]["usage"] == {"prompt_tokens": 3, "completion_tokens": 2}

    def test_stream_without_chunks(self, client):
        import main
        from services.prompts import NO_CONTENT_ANSWER
        main.retrieval_engine.search.return_value = []

        events = parse_events(client.post("/query/stream", json={"query": "When?", "file_ids": ["f1"]}).text)

        assert events[0] == {"type": "sources", "sources": []}
        assert events[1] == {"type": "token", "content": NO_CONTENT_ANSWER}
        assert events[2]["type"] == "done"
        main.llm_client.generate_stream.assert_not_called()

    def test_stream_retrieval_error_event(self, client):
        import main
        from services.semantic_searcher import RetrievalError
        main.retrieval_engine.search.side_effect = RetrievalError("index down")

        events = parse_events(client.post("/query/stream", json={"query": "When?", "file_ids": ["f1"]}).text)

        assert len(events) == 1
        assert events[0]["type"] == "error"

    def test_stream_llm_error_event(self, client):
        import main
        from services.llm_client import LLMError, LLMClientError
        main.llm_client.generate_stream.side_effect = LLMClientError(LLMError(
            code="TIMEOUT_ERROR", message="Request timed out. Please try again.", details={}
        ))

        events = parse_events(client.post("/query/stream", json={"query": "When?", "file_ids": ["f1"]}).text)

        assert events[0]["type"] == "sources"
        assert events[-1] == {
            "type": "error", "message": "Request timed out. Please try again.", "code": "TIMEOUT_ERROR"
        }

    def test_stream_validation_happens_before_streaming(self, client):
        response = client.post("/query/stream", json={"query": "", "file_ids": ["f1"]})
        assert response.status_code == 400


class TestEntityEndpoints:
    """Tests for /files/{file_id}/entities."""

    def test_enable_starts_extraction(self, client):
        import main
        from services.entity_extraction import ExtractionTask
        main.extraction_manager.enable = AsyncMock(return_value=ExtractionTask(file_id="f1", user_id="u1"))

        response = client.post("/files/f1/entities", headers={"X-User-Id": "u1"})

        assert response.status_code == 202
        assert response.json()["status"] == "pending"
        assert response.json()["enabled"] is True
        main.extraction_manager.enable.assert_awaited_once_with("f1", "u1")
        assert "X-RateLimit-Limit" in response.headers

    def test_enable_requires_ready_file(self, client):
        import main
        main.vector_store.get_files.return_value = [{"id": "f1", "user_id": "u1", "status": "pending"}]

        response = client.post("/files/f1/entities")

        assert response.status_code == 409

    def test_status_while_running(self, client):
        import main
        from models.entity import ExtractionStatus
        from services.entity_extraction import ExtractionTask
        main.entity_store.get_extraction_state.return_value = {
            "id": "f1", "entities_enabled": True, "entities_status": "pending", "entities_progress": None
        }
        main.extraction_manager.get_status.return_value = ExtractionTask(
            file_id="f1", user_id="u1", status=ExtractionStatus.PROCESSING, progress=40
        )

        data = client.get("/files/f1/entities").json()

        assert data["status"] == "processing"
        assert data["progress"] == 40
        assert data["entity_count"] is None
        main.entity_store.get_file_entity_stats.assert_not_called()

    def test_status_when_ready_includes_counts(self, client):
        import main
        main.entity_store.get_extraction_state.return_value = {
            "id": "f1", "entities_enabled": True, "entities_status": "ready", "entities_progress": 100
        }
        main.extraction_manager.get_status.return_value = None
        main.entity_store.get_file_entity_stats.return_value = {"entity_count": 12, "relationship_count": 7}

        data = client.get("/files/f1/entities").json()

        assert data["enabled"] is True
        assert data["entity_count"] == 12
        assert data["relationship_count"] == 7

    def test_status_unknown_file(self, client):
        import main
        main.entity_store.get_extraction_state.return_value = None

        assert client.get("/files/nope/entities").status_code == 404

    def test_status_store_failure(self, client):
        import main
        main.entity_store.get_extraction_state.side_effect = RuntimeError("db down")

        assert client.get("/files/f1/entities").status_code == 502

    def test_disable(self, client):
        import main
        main.extraction_manager.disable = AsyncMock()

        response = client.delete("/files/f1/entities")

        assert response.status_code == 200
        assert response.json() == {"file_id": "f1", "enabled": False}
        main.extraction_manager.disable.assert_awaited_once_with("f1")


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
