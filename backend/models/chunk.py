"""Chunk data models."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RetrievalMethod(str, Enum):
    """Which signal source produced a retrieved chunk."""
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class Chunk:
    """A bounded, citable span of document text produced by the chunker."""
    content: str
    index: int
    token_count: int
    page_number: Optional[int] = None
    section_title: Optional[str] = None


@dataclass(frozen=True)
class RetrievedChunk:
    """Chunk returned by a searcher for one query."""
    id: str
    content: str
    filename: str
    file_id: str
    similarity: float  # cosine similarity in [-1, 1]; 0 for keyword-only hits
    page: Optional[int] = None
    section: Optional[str] = None
    chunk_index: Optional[int] = None
    retrieval_method: RetrievalMethod = RetrievalMethod.SEMANTIC
    keyword_score: Optional[float] = None
    combined_score: Optional[float] = None
