"""LLM-based entity and relationship extraction."""
import logging
import re
import time
from typing import Any, Dict, List, Optional

from config import EXTRACTION_MODEL, ENTITY_MAX_RETRIES, ENTITY_MAX_OUTPUT_TOKENS
from models.entity import (
    DEFAULT_ENTITY_TYPE,
    EntityExtractionResult,
    EntityType,
    ExtractedEntity,
    ExtractedRelationship,
)
from services.json_recovery import recover_json
from services.llm_client import LLMClient, LLMClientError
from services.prompts import (
    ENTITY_EXTRACTION_SYSTEM_PROMPT,
    entity_extraction_prompt,
    query_entity_prompt,
)

logger = logging.getLogger(__name__)

RETRYABLE_ERROR_CODES = ("RATE_LIMIT_ERROR", "TIMEOUT_ERROR")

CHUNK_SEPARATOR = "\n\n---\n\n"
MENTION_CONTEXT_CHARS = 50
QUERY_MAX_TOKENS = 200

_WHITESPACE = re.compile(r"\s+")


def combine_chunks(chunks: List[Dict[str, Any]]) -> str:
    """Join chunk rows into one extraction input, each tagged with its index."""
    return CHUNK_SEPARATOR.join(
        f"[Chunk {chunk['chunk_index']}]\n{chunk['content']}" for chunk in chunks
    )


def normalize_relationship_type(value: str) -> str:
    """'Works At' -> 'works_at'."""
    return _WHITESPACE.sub("_", value.strip().lower())


def mention_context(content: str, name: str) -> str:
    """Text around the first case-insensitive occurrence of ``name``."""
    position = content.lower().find(name.lower())
    if position < 0:
        return ""
    start = max(0, position - MENTION_CONTEXT_CHARS)
    end = min(len(content), position + len(name) + MENTION_CONTEXT_CHARS)
    return content[start:end]


class EntityExtractor:
    """Extracts entities from document text and entity names from queries."""

    def __init__(
        self,
        llm_client: LLMClient,
        model: str = EXTRACTION_MODEL,
        max_retries: int = ENTITY_MAX_RETRIES,
        retry_delay: float = 1.0
    ):
        self.llm_client = llm_client
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def extract_from_batch(self, chunks: List[Dict[str, Any]]) -> EntityExtractionResult:
        """Extract from a batch of chunk rows in a single LLM call."""
        if not chunks:
            return EntityExtractionResult()
        return self.extract_from_text(combine_chunks(chunks))

    def extract_from_text(self, content: str) -> EntityExtractionResult:
        """
        Extract entities and relationships from text.

        Rate-limit and timeout errors are retried ``max_retries`` times with
        a doubling delay; other API errors give up at once. This never
        raises: exhausted retries or unrecoverable output give an empty
        result so the rest of the file can still be processed.
        """
        if not content or not content.strip():
            return EntityExtractionResult()

        delay = self.retry_delay
        for attempt in range(self.max_retries + 1):
            try:
                response = self.llm_client.generate(
                    model=self.model,
                    prompt=entity_extraction_prompt(content),
                    system_prompt=ENTITY_EXTRACTION_SYSTEM_PROMPT,
                    max_tokens=ENTITY_MAX_OUTPUT_TOKENS,
                    temperature=0.1,
                    json_mode=True
                )
            except LLMClientError as e:
                logger.error(f"Entity extraction API error (attempt {attempt + 1}): {e.error.code}")
                if e.error.code in RETRYABLE_ERROR_CODES and attempt < self.max_retries:
                    time.sleep(delay)
                    delay *= 2
                    continue
                return EntityExtractionResult()

            payload = recover_json(response.text, ["entities", "relationships"])
            if payload is None:
                logger.warning("Discarding batch with unrecoverable extraction output")
                return EntityExtractionResult()

            return EntityExtractionResult(
                entities=self.validate_entities(payload.get("entities")),
                relationships=self.validate_relationships(payload.get("relationships")),
            )

        return EntityExtractionResult()

    def extract_from_query(self, query: str) -> List[str]:
        """
        Names of entities explicitly mentioned in a query.

        Returns:
            Entity names; empty on any failure
        """
        if not query or not query.strip():
            return []

        try:
            response = self.llm_client.generate(
                model=self.model,
                prompt=query_entity_prompt(query),
                max_tokens=QUERY_MAX_TOKENS,
                temperature=0,
                json_mode=True
            )
        except LLMClientError as e:
            logger.error(f"Query entity extraction error: {e.error.message}")
            return []

        payload = recover_json(response.text, ["entities"])
        names = payload.get("entities") if payload else None
        if not isinstance(names, list):
            return []

        seen = set()
        result = []
        for name in names:
            if isinstance(name, str) and name.strip() and name.strip().lower() not in seen:
                seen.add(name.strip().lower())
                result.append(name.strip())
        return result

    @staticmethod
    def validate_entities(raw: Any) -> List[ExtractedEntity]:
        """
        Keep objects with a non-empty string ``name``.

        Unknown ``type`` values become the default type; non-string aliases
        are dropped.
        """
        if not isinstance(raw, list):
            return []

        entities = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                continue

            try:
                entity_type = EntityType(item.get("type"))
            except ValueError:
                entity_type = DEFAULT_ENTITY_TYPE

            aliases = item.get("aliases")
            description = item.get("description")
            entities.append(ExtractedEntity(
                name=name.strip(),
                entity_type=entity_type,
                aliases=[a.strip() for a in aliases if isinstance(a, str) and a.strip()]
                if isinstance(aliases, list) else [],
                description=description if isinstance(description, str) else None,
            ))
        return entities

    @staticmethod
    def validate_relationships(raw: Any) -> List[ExtractedRelationship]:
        """Keep objects with string source, target and type; drop self-loops."""
        if not isinstance(raw, list):
            return []

        relationships = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            source, target, rel_type = item.get("source"), item.get("target"), item.get("type")
            if not all(isinstance(v, str) and v.strip() for v in (source, target, rel_type)):
                continue
            if source.strip().lower() == target.strip().lower():
                continue
            relationships.append(ExtractedRelationship(
                source=source.strip(),
                target=target.strip(),
                relationship_type=normalize_relationship_type(rel_type),
            ))
        return relationships

    @staticmethod
    def find_mentioned_entities(content: str, entities: List[ExtractedEntity]) -> List[str]:
        """
        Names of entities whose name or any alias occurs in ``content``.

        Plain case-insensitive substring matching: it over-matches substrings
        of unrelated words and misses morphological variants.
        """
        content_lower = content.lower()
        mentioned = []
        for entity in entities:
            candidates = [entity.name] + list(entity.aliases)
            if any(c and c.lower() in content_lower for c in candidates):
                mentioned.append(entity.name)
        return mentioned


def first_mention_name(content: str, entity: ExtractedEntity) -> Optional[str]:
    """The name or alias of ``entity`` that actually appears in ``content``."""
    content_lower = content.lower()
    for candidate in [entity.name] + list(entity.aliases):
        if candidate and candidate.lower() in content_lower:
            return candidate
    return None
