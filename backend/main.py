"""Main entry point for DocLens retrieval API."""
import asyncio
import json
import logging
import time
import tiktoken
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from supabase import create_client

from config import (
    PORT,
    LOG_LEVEL,
    CORS_ORIGINS,
    SUPABASE_URL,
    SUPABASE_KEY,
    ANSWER_MODEL,
    DEFAULT_TOP_K,
    DETAILED_TOP_K,
    QUERY_TIMEOUT_SECONDS,
    SIMPLE_CONTEXT_TOKENS,
    DETAILED_CONTEXT_TOKENS,
    SIMPLE_ANSWER_TOKENS,
    DETAILED_ANSWER_TOKENS,
)
from logger import setup_logging
from models.api import QueryRequest, QueryResponse, EntityStatusResponse
from models.chunk import RetrievedChunk
from models.document import FileStatus
from models.entity import ExtractionStatus
from models.search import QueryMode
from services.context_assembler import ContextAssembler, chunks_to_sources
from services.embedding_model import EmbeddingModel
from services.entity_expander import EntityExpander
from services.entity_extraction import EntityExtractionManager
from services.entity_extractor import EntityExtractor
from services.entity_store import EntityStore
from services.keyword_searcher import KeywordSearcher
from services.llm_client import LLMClient, LLMClientError
from services.prompts import NO_CONTENT_ANSWER
from services.rate_limiter import BaseRateLimiter, RateLimiter, RateLimitResult
from services.retrieval_engine import RetrievalEngine
from services.semantic_searcher import RetrievalError, SemanticSearcher
from services.vector_store import VectorStore

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="DocLens Retrieval API",
    description="Grounded question answering over uploaded documents",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
vector_store: VectorStore = None
entity_store: EntityStore = None
retrieval_engine: RetrievalEngine = None
context_assembler: ContextAssembler = None
llm_client: LLMClient = None
extraction_manager: EntityExtractionManager = None
rate_limiter: BaseRateLimiter = None
tiktoken_encoder = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global vector_store, entity_store, retrieval_engine, context_assembler
    global llm_client, extraction_manager, rate_limiter, tiktoken_encoder

    setup_logging(LOG_LEVEL)
    logger.info("Initializing DocLens services...")

    try:
        # Initialize tiktoken encoder for Llama 3 token counting
        tiktoken_encoder = tiktoken.get_encoding("o200k_base")
        logger.info("Initialized tiktoken encoder (o200k_base)")

        # One Supabase client shared by both stores
        supabase = create_client(SUPABASE_URL, SUPABASE_KEY)
        vector_store = VectorStore(client=supabase)
        entity_store = EntityStore(client=supabase)

        embedding_model = EmbeddingModel()
        llm_client = LLMClient()
        extractor = EntityExtractor(llm_client)

        retrieval_engine = RetrievalEngine(
            semantic_searcher=SemanticSearcher(embedding_model, vector_store),
            keyword_searcher=KeywordSearcher(vector_store),
            entity_expander=EntityExpander(extractor, entity_store),
            entity_store=entity_store
        )
        logger.info("Initialized RetrievalEngine")

        context_assembler = ContextAssembler()
        extraction_manager = EntityExtractionManager(entity_store, extractor)
        rate_limiter = RateLimiter()

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "DocLens Retrieval API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "doclens-retrieval",
        "version": "1.0.0"
    }


def _check_rate_limit(request: Request, user_id: Optional[str], endpoint: str) -> RateLimitResult:
    """Count the request against the caller's limit; 429 when exhausted."""
    caller = user_id or (request.client.host if request.client else "anonymous")
    result = rate_limiter.check(caller, endpoint)
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers=result.headers()
        )
    return result


async def _verify_files(file_ids: List[str], user_id: Optional[str]) -> List[Dict[str, Any]]:
    """
    Check that every file exists, belongs to the caller and is ready.

    Raises:
        HTTPException: 404 for unknown or foreign files, 409 for files still processing
    """
    files = await asyncio.to_thread(vector_store.get_files, file_ids)
    if user_id:
        files = [f for f in files if f.get("user_id") in (None, user_id)]

    if len({f["id"] for f in files}) != len(set(file_ids)):
        raise HTTPException(status_code=404, detail="One or more files not found or not owned by user")

    if any(f.get("status") != FileStatus.READY.value for f in files):
        raise HTTPException(
            status_code=409,
            detail="One or more files are not ready for querying. Please wait for processing to complete."
        )
    return files


def _validate_query(request: QueryRequest) -> None:
    if not request.query or not request.query.strip():
        raise HTTPException(status_code=400, detail="Query is required")
    if not request.file_ids:
        raise HTTPException(status_code=400, detail="At least one file ID is required")


async def _retrieve(request: QueryRequest) -> List[RetrievedChunk]:
    """Run retrieval under the query deadline."""
    top_k = DETAILED_TOP_K if request.mode in (QueryMode.DETAILED, QueryMode.DEEP) else DEFAULT_TOP_K
    chunks = await asyncio.wait_for(
        retrieval_engine.search(request.query.strip(), request.file_ids, top_k, request.search_mode),
        timeout=QUERY_TIMEOUT_SECONDS
    )
    logger.info(f"Search returned {len(chunks)} chunks (top_k={top_k}, mode={request.search_mode.value})")
    return chunks


def _limits_for(mode: QueryMode):
    """(context token budget, answer token limit) for a query mode."""
    if mode == QueryMode.DETAILED:
        return DETAILED_CONTEXT_TOKENS, DETAILED_ANSWER_TOKENS
    return SIMPLE_CONTEXT_TOKENS, SIMPLE_ANSWER_TOKENS


def _sse(event: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(event)}\n\n".encode('utf-8')


@app.post("/query", response_model=QueryResponse)
async def query_endpoint(
    request: QueryRequest,
    http_request: Request,
    response: Response,
    x_user_id: Optional[str] = Header(default=None)
) -> QueryResponse:
    """
    Answer a question from the caller's documents.

    Retrieval runs first (bounded by QUERY_TIMEOUT_SECONDS), then the
    assembled context is sent to the answer model.

    Raises:
        HTTPException: 400 invalid request, 404 unknown files, 409 files not
            ready, 429 rate limited, 502 retrieval failure, 503 LLM failure,
            504 retrieval deadline exceeded
    """
    start_time = time.time()
    limit = _check_rate_limit(http_request, x_user_id, "query")
    response.headers.update(limit.headers())

    _validate_query(request)
    await _verify_files(request.file_ids, x_user_id)
    logger.info(f"Processing query: {request.query[:100]}...")

    try:
        chunks = await _retrieve(request)
    except asyncio.TimeoutError:
        logger.error(f"Retrieval exceeded {QUERY_TIMEOUT_SECONDS}s deadline")
        raise HTTPException(status_code=504, detail="Search timed out")
    except RetrievalError as e:
        logger.error(f"Retrieval failed: {e}")
        raise HTTPException(status_code=502, detail=f"Search failed: {e}")

    if not chunks:
        logger.warning("No chunks found - returning empty result")
        return QueryResponse(content=NO_CONTENT_ANSWER, sources=[])

    context_tokens, answer_tokens = _limits_for(request.mode)
    assembled = context_assembler.assemble(chunks, context_tokens)
    prompts = LLMClient.build_prompt(request.query.strip(), assembled.context, request.mode)

    try:
        llm_response = await asyncio.to_thread(
            llm_client.generate,
            model=ANSWER_MODEL,
            prompt=prompts["user"],
            system_prompt=prompts["system"],
            max_tokens=answer_tokens,
            temperature=0.3
        )
    except LLMClientError as e:
        # Handle LLM client errors with structured error response
        logger.error(f"LLM client error: {e.error.message}")
        raise HTTPException(
            status_code=503,
            detail={
                "error": {
                    "code": e.error.code,
                    "message": e.error.message,
                    "details": e.error.details
                }
            }
        )

    total_latency_ms = int((time.time() - start_time) * 1000)
    logger.info(
        f"Query processed successfully in {total_latency_ms}ms",
        extra={"chunks_used": len(assembled.used_chunks), "tokens_output": llm_response.tokens_output}
    )
    return QueryResponse(
        content=llm_response.text or "Unable to generate response.",
        sources=chunks_to_sources(assembled.used_chunks)
    )


@app.post("/query/stream")
async def query_stream_endpoint(
    request: QueryRequest,
    http_request: Request,
    x_user_id: Optional[str] = Header(default=None)
):
    """
    Streaming variant of /query as Server-Sent Events.

    Events, each ``data: {json}``:
    - {"type": "sources", "sources": [...]} once, before any token
    - {"type": "token", "content": "..."} repeatedly
    - {"type": "done", "usage": {...}} on success
    - {"type": "error", "message": "..."} on failure (ends the stream)

    Request validation failures are returned as plain HTTP errors before
    the stream starts.
    """
    limit = _check_rate_limit(http_request, x_user_id, "query")
    _validate_query(request)
    await _verify_files(request.file_ids, x_user_id)

    async def generate_stream():
        """Generator function for streaming response."""
        start_time = time.time()
        logger.info(f"Processing streaming query: {request.query[:100]}...")

        try:
            chunks = await _retrieve(request)
        except asyncio.TimeoutError:
            logger.error(f"Retrieval exceeded {QUERY_TIMEOUT_SECONDS}s deadline")
            yield _sse({"type": "error", "message": "Search timed out"})
            return
        except RetrievalError as e:
            logger.error(f"Retrieval failed during streaming: {e}")
            yield _sse({"type": "error", "message": f"Search failed: {e}"})
            return

        # Ranking is complete before generation starts
        context_tokens, answer_tokens = _limits_for(request.mode)
        assembled = context_assembler.assemble(chunks, context_tokens)
        sources = chunks_to_sources(assembled.used_chunks)
        yield _sse({"type": "sources", "sources": [s.model_dump() for s in sources]})

        if not chunks:
            yield _sse({"type": "token", "content": NO_CONTENT_ANSWER})
            yield _sse({"type": "done", "usage": {"prompt_tokens": 0, "completion_tokens": 0}})
            return

        prompts = LLMClient.build_prompt(request.query.strip(), assembled.context, request.mode)
        prompt_tokens = len(tiktoken_encoder.encode(prompts["system"] + prompts["user"]))

        try:
            stream = llm_client.generate_stream(
                model=ANSWER_MODEL,
                prompt=prompts["user"],
                system_prompt=prompts["system"],
                max_tokens=answer_tokens,
                temperature=0.3
            )
            llm_metadata: Dict[str, Any] = {}
            while True:
                # Pull each chunk off the blocking Groq stream in a worker thread
                event = await asyncio.to_thread(next, stream, None)
                if event is None:
                    break
                if event["type"] == "token":
                    yield _sse(event)
                elif event["type"] == "metadata":
                    llm_metadata = event["data"]

            yield _sse({
                "type": "done",
                "usage": {
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": llm_metadata.get("tokens_output", 0),
                }
            })
            logger.info(f"Streaming query processed in {int((time.time() - start_time) * 1000)}ms")

        except LLMClientError as e:
            logger.error(f"LLM client error during streaming: {e.error.message}")
            yield _sse({"type": "error", "message": e.error.message, "code": e.error.code})
        except Exception as e:
            logger.error(f"Unexpected error during streaming: {e}", exc_info=True)
            yield _sse({"type": "error", "message": f"Internal server error: {str(e)}"})

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable buffering in nginx
            **limit.headers()
        }
    )


async def _entity_status(file_id: str) -> EntityStatusResponse:
    state = await asyncio.to_thread(entity_store.get_extraction_state, file_id)
    if state is None:
        raise HTTPException(status_code=404, detail="File not found")

    task = extraction_manager.get_status(file_id)
    status = state.get("entities_status")
    progress = state.get("entities_progress")
    error = None
    if task is not None:
        status = task.status.value
        progress = task.progress
        error = task.error

    entity_count = relationship_count = None
    if status == ExtractionStatus.READY.value:
        stats = await asyncio.to_thread(entity_store.get_file_entity_stats, file_id)
        entity_count = stats["entity_count"]
        relationship_count = stats["relationship_count"]

    return EntityStatusResponse(
        file_id=file_id,
        enabled=bool(state.get("entities_enabled")),
        status=status,
        progress=progress,
        entity_count=entity_count,
        relationship_count=relationship_count,
        error=error
    )


@app.post("/files/{file_id}/entities", status_code=202)
async def enable_entities(
    file_id: str,
    http_request: Request,
    x_user_id: Optional[str] = Header(default=None)
):
    """Enable entity extraction for a file and start it in the background."""
    limit = _check_rate_limit(http_request, x_user_id, "entities")
    files = await _verify_files([file_id], x_user_id)

    task = await extraction_manager.enable(file_id, x_user_id or files[0].get("user_id"))
    logger.info(f"Started entity extraction for file {file_id}")

    body = EntityStatusResponse(
        file_id=file_id,
        enabled=True,
        status=task.status.value,
        progress=task.progress
    )
    return JSONResponse(status_code=202, content=body.model_dump(), headers=limit.headers())


@app.get("/files/{file_id}/entities", response_model=EntityStatusResponse)
async def get_entities_status(file_id: str):
    """Entity extraction status, progress and (when ready) counts."""
    try:
        return await _entity_status(file_id)
    except RuntimeError as e:
        logger.error(f"Failed to read entity status for {file_id}: {e}")
        raise HTTPException(status_code=502, detail="Entity store unavailable")


@app.delete("/files/{file_id}/entities")
async def disable_entities(
    file_id: str,
    http_request: Request,
    x_user_id: Optional[str] = Header(default=None)
):
    """Cancel extraction, delete the file's entities and clear its flags."""
    _check_rate_limit(http_request, x_user_id, "entities")
    try:
        await extraction_manager.disable(file_id)
    except RuntimeError as e:
        logger.error(f"Failed to disable entities for {file_id}: {e}")
        raise HTTPException(status_code=502, detail="Entity store unavailable")
    return {"file_id": file_id, "enabled": False}


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting DocLens Retrieval API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
