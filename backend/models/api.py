"""API request/response models."""
from typing import List, Optional

from pydantic import BaseModel, Field

from models.search import QueryMode, SearchMode


class QueryRequest(BaseModel):
    """Body of POST /query and POST /query/stream."""
    query: str
    file_ids: List[str] = Field(default_factory=list)
    mode: QueryMode = QueryMode.SIMPLE
    search_mode: SearchMode = SearchMode.AUTO


class Source(BaseModel):
    """Citation for one chunk used in the answer context."""
    id: str
    title: str
    url: str
    content: str
    snippet: Optional[str] = None
    retrieval_method: Optional[str] = None
    score: Optional[float] = None


class QueryResponse(BaseModel):
    """Answer with the sources that grounded it."""
    content: str
    sources: List[Source]


class EntityStatusResponse(BaseModel):
    """Progress of a file's entity extraction."""
    file_id: str
    enabled: bool
    status: Optional[str] = None
    progress: Optional[int] = None
    entity_count: Optional[int] = None
    relationship_count: Optional[int] = None
    error: Optional[str] = None
