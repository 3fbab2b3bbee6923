"""Entity graph data models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from models.chunk import RetrievedChunk


class EntityType(str, Enum):
    """Kinds of named entities the extractor recognises."""
    CHARACTER = "character"
    LOCATION = "location"
    OBJECT = "object"
    EVENT = "event"
    ORGANIZATION = "organization"


DEFAULT_ENTITY_TYPE = EntityType.CHARACTER


class ExtractionStatus(str, Enum):
    """Lifecycle of a file's background entity extraction."""
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


def canonical_name(name: str) -> str:
    """Canonical form used for (file, name) uniqueness and alias matching."""
    return " ".join(name.split()).lower()


@dataclass
class Entity:
    """Named entity stored for one file."""
    id: str
    file_id: str
    name: str
    entity_type: EntityType
    aliases: List[str] = field(default_factory=list)
    description: Optional[str] = None
    mention_count: int = 1


@dataclass
class Relationship:
    """Directed, typed edge between two entities of the same file."""
    id: str
    file_id: str
    source_entity_id: str
    target_entity_id: str
    relationship_type: str
    evidence_chunk_ids: List[str] = field(default_factory=list)
    confidence: float = 1.0


@dataclass
class Mention:
    """Link row: ``entity_id`` is mentioned in ``chunk_id``."""
    entity_id: str
    chunk_id: str
    mention_text: str
    context: str


@dataclass
class RelatedEntity:
    """Entity reached by a 1-hop traversal from a query entity."""
    id: str
    name: str
    entity_type: EntityType
    relationship_type: str
    direction: str  # "outgoing" or "incoming"
    confidence: float


@dataclass
class ExtractedEntity:
    """Validated entity as emitted by the extraction LLM."""
    name: str
    entity_type: EntityType = DEFAULT_ENTITY_TYPE
    aliases: List[str] = field(default_factory=list)
    description: Optional[str] = None


@dataclass
class ExtractedRelationship:
    """Validated relationship as emitted by the extraction LLM."""
    source: str
    target: str
    relationship_type: str


@dataclass
class EntityExtractionResult:
    """Entities and relationships found in one batch of chunks."""
    entities: List[ExtractedEntity] = field(default_factory=list)
    relationships: List[ExtractedRelationship] = field(default_factory=list)


@dataclass
class EntityQueryExpansion:
    """Entities resolved from a query and the chunks that mention them."""
    query_entities: List[Entity] = field(default_factory=list)
    related_entities: List[RelatedEntity] = field(default_factory=list)
    entity_chunk_ids: List[str] = field(default_factory=list)
    entity_chunks: List[RetrievedChunk] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entity_chunk_ids
