"""Query expansion through the entity graph."""
import logging
from typing import List

from models.entity import Entity, EntityQueryExpansion
from services.entity_extractor import EntityExtractor
from services.entity_store import EntityStore

logger = logging.getLogger(__name__)


class EntityExpander:
    """
    Resolve entities named in a query and collect the chunks that mention
    them or their direct neighbours.

    Graph failures are absorbed: a step that fails contributes nothing and
    the expansion continues with what it has.
    """

    def __init__(self, extractor: EntityExtractor, entity_store: EntityStore, max_depth: int = 1):
        self.extractor = extractor
        self.entity_store = entity_store
        self.max_depth = max_depth

    def expand(self, query: str, file_ids: List[str]) -> EntityQueryExpansion:
        """
        Expand a query into entity-related chunk ids.

        Args:
            query: User query text
            file_ids: Files the caller may search

        Returns:
            EntityQueryExpansion; all lists empty when no entity resolves
        """
        if not file_ids:
            return EntityQueryExpansion()

        names = self.extractor.extract_from_query(query)
        logger.info(f"Query entities: {names}")
        if not names:
            return EntityQueryExpansion()

        query_entities = self._resolve(names, file_ids)
        if not query_entities:
            logger.info("No query entity matched the entity graph")
            return EntityQueryExpansion()

        query_ids = [e.id for e in query_entities]
        try:
            related = self.entity_store.get_related_entities(query_ids, self.max_depth)
        except RuntimeError as e:
            logger.warning(f"Relationship traversal failed, using query entities only: {e}")
            related = []

        all_ids = list(dict.fromkeys(query_ids + [r.id for r in related]))
        try:
            chunks = self.entity_store.get_chunks_for_entities(all_ids)
        except RuntimeError as e:
            logger.warning(f"Entity chunk lookup failed: {e}")
            chunks = []

        allowed = set(file_ids)
        chunks = [c for c in chunks if c.file_id in allowed]
        chunk_ids = list(dict.fromkeys(c.id for c in chunks))

        logger.info(
            f"Entity expansion: {len(query_entities)} query, {len(related)} related, "
            f"{len(chunk_ids)} chunks"
        )
        return EntityQueryExpansion(
            query_entities=query_entities,
            related_entities=related,
            entity_chunk_ids=chunk_ids,
            entity_chunks=chunks,
        )

    def _resolve(self, names: List[str], file_ids: List[str]) -> List[Entity]:
        """Best match (highest mention count) per name, without duplicates."""
        resolved: List[Entity] = []
        seen = set()
        for name in names:
            try:
                matches = self.entity_store.find_entities_by_name(name, file_ids)
            except RuntimeError as e:
                logger.warning(f"Entity lookup for '{name}' failed: {e}")
                continue
            if not matches:
                continue
            best = max(matches, key=lambda entity: entity.mention_count)
            if best.id not in seen:
                seen.add(best.id)
                resolved.append(best)
        return resolved
