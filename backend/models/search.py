"""Search and chunking configuration models."""
from dataclasses import dataclass
from enum import Enum

from config import (
    TARGET_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    CHUNK_OVERLAP,
    MIN_CHUNK_SIZE,
    SEMANTIC_WEIGHT,
    KEYWORD_WEIGHT,
    RRF_K,
)


class SearchMode(str, Enum):
    """How the retrieval engine combines signal sources."""
    AUTO = "auto"  # entity-boosted when entities are ready, else semantic
    SEMANTIC = "semantic"
    HYBRID = "hybrid"  # semantic + keyword via RRF
    ENTITY = "entity"  # semantic + entity expansion boost


class QueryMode(str, Enum):
    """Answer depth requested by the caller."""
    SIMPLE = "simple"
    DETAILED = "detailed"
    DEEP = "deep"


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk size limits, in characters."""
    target_chunk_size: int = TARGET_CHUNK_SIZE
    max_chunk_size: int = MAX_CHUNK_SIZE
    overlap_size: int = CHUNK_OVERLAP
    min_chunk_size: int = MIN_CHUNK_SIZE

    def __post_init__(self):
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        if self.overlap_size < 0 or self.min_chunk_size < 0 or self.target_chunk_size < 0:
            raise ValueError("chunk sizes cannot be negative")


@dataclass(frozen=True)
class HybridSearchConfig:
    """Relative weights for reciprocal rank fusion.

    Weights are relative, not probabilities: they need not sum to 1 but
    must be non-negative.
    """
    semantic_weight: float = SEMANTIC_WEIGHT
    keyword_weight: float = KEYWORD_WEIGHT
    rrf_k: int = RRF_K

    def __post_init__(self):
        if self.semantic_weight < 0 or self.keyword_weight < 0:
            raise ValueError("Fusion weights must be non-negative")
        if self.rrf_k < 0:
            raise ValueError("rrf_k must be non-negative")
