"""Data models for DocLens retrieval engine."""
from .document import ExtractedContent, Page, FileStatus
from .chunk import Chunk, RetrievedChunk, RetrievalMethod
from .entity import (
    Entity,
    EntityType,
    Relationship,
    Mention,
    RelatedEntity,
    ExtractedEntity,
    ExtractedRelationship,
    EntityExtractionResult,
    EntityQueryExpansion,
    ExtractionStatus,
)
from .search import ChunkingConfig, HybridSearchConfig, SearchMode, QueryMode
from .api import QueryRequest, QueryResponse, Source, EntityStatusResponse

__all__ = [
    "ExtractedContent",
    "Page",
    "FileStatus",
    "Chunk",
    "RetrievedChunk",
    "RetrievalMethod",
    "Entity",
    "EntityType",
    "Relationship",
    "Mention",
    "RelatedEntity",
    "ExtractedEntity",
    "ExtractedRelationship",
    "EntityExtractionResult",
    "EntityQueryExpansion",
    "ExtractionStatus",
    "ChunkingConfig",
    "HybridSearchConfig",
    "SearchMode",
    "QueryMode",
    "QueryRequest",
    "QueryResponse",
    "Source",
    "EntityStatusResponse",
]
