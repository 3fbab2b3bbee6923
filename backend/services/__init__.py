"""Services for DocLens retrieval engine."""
from .document_loader import DocumentLoader
from .chunking_engine import ChunkingEngine
from .embedding_model import EmbeddingModel
from .vector_store import VectorStore
from .entity_store import EntityStore
from .semantic_searcher import SemanticSearcher, RetrievalError
from .keyword_searcher import KeywordSearcher
from .rank_fusion import reciprocal_rank_fusion, apply_entity_boost
from .llm_client import LLMClient, LLMResponse, LLMError, LLMClientError
from .entity_extractor import EntityExtractor
from .entity_expander import EntityExpander
from .entity_extraction import EntityExtractionManager, ExtractionTask, EntityDedupMap
from .retrieval_engine import RetrievalEngine
from .context_assembler import ContextAssembler, AssembledContext, chunks_to_sources
from .rate_limiter import BaseRateLimiter, RateLimiter, RateLimitResult
from .ingestion_pipeline import IngestionPipeline

__all__ = [
    'DocumentLoader', 'ChunkingEngine', 'EmbeddingModel', 'VectorStore', 'EntityStore',
    'SemanticSearcher', 'RetrievalError', 'KeywordSearcher', 'reciprocal_rank_fusion',
    'apply_entity_boost', 'LLMClient', 'LLMResponse', 'LLMError', 'LLMClientError',
    'EntityExtractor', 'EntityExpander', 'EntityExtractionManager', 'ExtractionTask',
    'EntityDedupMap', 'RetrievalEngine', 'ContextAssembler', 'AssembledContext',
    'chunks_to_sources', 'BaseRateLimiter', 'RateLimiter', 'RateLimitResult', 'IngestionPipeline'
]
