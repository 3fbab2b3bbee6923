"""Entity graph storage over Supabase tables and RPCs."""
import logging
from typing import Any, Dict, List, Optional
from supabase import create_client, Client
from models.chunk import RetrievedChunk, RetrievalMethod
from models.entity import (
    DEFAULT_ENTITY_TYPE,
    Entity,
    EntityType,
    ExtractedEntity,
    ExtractionStatus,
    Mention,
    RelatedEntity,
)
from services.vector_store import row_to_retrieved_chunk
from config import SUPABASE_URL, SUPABASE_KEY

logger = logging.getLogger(__name__)


def _entity_type(value: Optional[str]) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        return DEFAULT_ENTITY_TYPE


class EntityStore:
    """
    Named entities, relationships and mentions per file.

    Read paths go through the search RPCs (find_entities_by_name,
    get_related_entities, get_chunks_for_entities); writes go straight to
    document_entities, entity_relationships and entity_mentions. Every
    failure is logged and re-raised as RuntimeError; callers decide whether
    a failure is fatal.
    """

    def __init__(
        self,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        client: Optional[Client] = None
    ):
        if client is None:
            if not supabase_url or not supabase_key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")
            client = create_client(supabase_url, supabase_key)

        self.client: Client = client
        logger.info("Initialized EntityStore")

    def _fail(self, message: str, error: Exception) -> RuntimeError:
        error_msg = f"{message}: {str(error)}"
        logger.error(error_msg)
        return RuntimeError(error_msg)

    # Search

    def find_entities_by_name(self, name: str, file_ids: List[str]) -> List[Entity]:
        """
        Entities whose name or alias equals ``name`` (case-insensitive).

        Returns:
            Matches ordered by mention_count, descending
        """
        try:
            response = self.client.rpc(
                "find_entities_by_name",
                {"search_name": name, "file_ids": list(file_ids)}
            ).execute()
        except Exception as e:
            raise self._fail(f"Failed to find entities named '{name}'", e)

        entities = [
            Entity(
                id=str(row["id"]),
                file_id=str(row.get("file_id", "")),
                name=row["name"],
                entity_type=_entity_type(row.get("entity_type")),
                aliases=list(row.get("aliases") or []),
                description=row.get("description"),
                mention_count=int(row.get("mention_count") or 0),
            )
            for row in response.data or []
        ]
        entities.sort(key=lambda e: e.mention_count, reverse=True)
        return entities

    def get_related_entities(self, entity_ids: List[str], max_depth: int = 1) -> List[RelatedEntity]:
        """Entities one hop away along incoming or outgoing relationships."""
        if not entity_ids:
            return []

        try:
            response = self.client.rpc(
                "get_related_entities",
                {"entity_ids": list(entity_ids), "max_depth": max_depth}
            ).execute()
        except Exception as e:
            raise self._fail("Failed to get related entities", e)

        return [
            RelatedEntity(
                id=str(row["id"]),
                name=row["name"],
                entity_type=_entity_type(row.get("entity_type")),
                relationship_type=row.get("relationship_type", ""),
                direction=row.get("direction", "outgoing"),
                confidence=float(row.get("confidence") or 1.0),
            )
            for row in response.data or []
        ]

    def get_chunks_for_entities(self, entity_ids: List[str]) -> List[RetrievedChunk]:
        """Chunks that mention any of the given entities."""
        if not entity_ids:
            return []

        try:
            response = self.client.rpc(
                "get_chunks_for_entities",
                {"entity_ids": list(entity_ids)}
            ).execute()
        except Exception as e:
            raise self._fail("Failed to get chunks for entities", e)

        return [
            row_to_retrieved_chunk(
                row,
                similarity=0.0,
                retrieval_method=RetrievalMethod.HYBRID,
                id_field="chunk_id"
            )
            for row in response.data or []
        ]

    # Extraction writes

    def get_file_chunks(self, file_id: str) -> List[Dict[str, Any]]:
        """Chunk rows (id, chunk_index, content) of a file in index order."""
        try:
            response = (
                self.client.table("file_chunks")
                .select("id, chunk_index, content")
                .eq("file_id", file_id)
                .order("chunk_index")
                .execute()
            )
            return response.data or []
        except Exception as e:
            raise self._fail(f"Failed to get chunks for file {file_id}", e)

    def insert_entity(
        self,
        file_id: str,
        user_id: str,
        entity: ExtractedEntity,
        first_mention_chunk: int
    ) -> str:
        """Insert a new entity row and return its id."""
        try:
            response = self.client.table("document_entities").insert({
                "file_id": file_id,
                "user_id": user_id,
                "name": entity.name,
                "entity_type": entity.entity_type.value,
                "aliases": entity.aliases,
                "description": entity.description,
                "first_mention_chunk": first_mention_chunk,
                "mention_count": 1,
            }).execute()
        except Exception as e:
            raise self._fail(f"Failed to insert entity {entity.name}", e)

        if not response.data:
            raise RuntimeError(f"Insert of entity {entity.name} returned no row")
        return str(response.data[0]["id"])

    def update_entity(self, entity_id: str, mention_count: int, aliases: List[str]) -> None:
        try:
            self.client.table("document_entities").update({
                "mention_count": mention_count,
                "aliases": aliases,
            }).eq("id", entity_id).execute()
        except Exception as e:
            raise self._fail(f"Failed to update entity {entity_id}", e)

    def insert_relationship(
        self,
        file_id: str,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        evidence_chunk_ids: List[str],
        confidence: float = 1.0
    ) -> str:
        """Insert a relationship edge and return its id."""
        try:
            response = self.client.table("entity_relationships").insert({
                "file_id": file_id,
                "source_entity_id": source_entity_id,
                "target_entity_id": target_entity_id,
                "relationship_type": relationship_type,
                "evidence_chunk_ids": evidence_chunk_ids,
                "confidence": confidence,
            }).execute()
        except Exception as e:
            raise self._fail(
                f"Failed to insert relationship {source_entity_id} -> {target_entity_id}", e
            )

        if not response.data:
            raise RuntimeError("Insert of relationship returned no row")
        return str(response.data[0]["id"])

    def update_relationship_evidence(self, relationship_id: str, evidence_chunk_ids: List[str]) -> None:
        try:
            self.client.table("entity_relationships").update({
                "evidence_chunk_ids": evidence_chunk_ids,
            }).eq("id", relationship_id).execute()
        except Exception as e:
            raise self._fail(f"Failed to update relationship {relationship_id}", e)

    def insert_mentions(self, mentions: List[Mention]) -> None:
        if not mentions:
            return

        try:
            self.client.table("entity_mentions").insert([
                {
                    "entity_id": m.entity_id,
                    "chunk_id": m.chunk_id,
                    "mention_text": m.mention_text,
                    "context": m.context,
                }
                for m in mentions
            ]).execute()
        except Exception as e:
            raise self._fail(f"Failed to store {len(mentions)} mentions", e)

    def delete_file_entities(self, file_id: str) -> None:
        """Delete all entities of a file; relationships and mentions cascade."""
        try:
            self.client.table("document_entities").delete().eq("file_id", file_id).execute()
            logger.info(f"Deleted entities for file {file_id}")
        except Exception as e:
            raise self._fail(f"Failed to delete entities for file {file_id}", e)

    # File flags and status

    def file_exists(self, file_id: str) -> bool:
        try:
            response = (
                self.client.table("file_uploads")
                .select("id")
                .eq("id", file_id)
                .execute()
            )
            return bool(response.data)
        except Exception as e:
            raise self._fail(f"Failed to check file {file_id}", e)

    def set_entities_enabled(
        self,
        file_id: str,
        enabled: bool,
        status: Optional[ExtractionStatus] = None
    ) -> None:
        """Set the entities_enabled flag; disabling clears status and progress."""
        updates: Dict[str, Any] = {
            "entities_enabled": enabled,
            "entities_status": status.value if status else None,
        }
        if not enabled:
            updates["entities_progress"] = None

        try:
            self.client.table("file_uploads").update(updates).eq("id", file_id).execute()
        except Exception as e:
            raise self._fail(f"Failed to update entity flags for file {file_id}", e)

    def update_extraction_status(
        self,
        file_id: str,
        status: ExtractionStatus,
        progress: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        """Publish extraction status; failures are logged, never raised."""
        updates: Dict[str, Any] = {"entities_status": status.value}
        if progress is not None:
            updates["entities_progress"] = max(0, min(100, progress))
        if error:
            logger.error(f"Entity extraction error for {file_id}: {error}")

        try:
            self.client.table("file_uploads").update(updates).eq("id", file_id).execute()
        except Exception as e:
            logger.error(f"Failed to update entity status for file {file_id}: {str(e)}")

    def get_extraction_state(self, file_id: str) -> Optional[Dict[str, Any]]:
        """entities_enabled, entities_status and entities_progress of a file, or None."""
        try:
            response = (
                self.client.table("file_uploads")
                .select("id, entities_enabled, entities_status, entities_progress")
                .eq("id", file_id)
                .execute()
            )
        except Exception as e:
            raise self._fail(f"Failed to read entity state for file {file_id}", e)

        return response.data[0] if response.data else None

    def any_file_has_entities(self, file_ids: List[str]) -> bool:
        """True if any file has entities enabled and extraction ready."""
        if not file_ids:
            return False

        try:
            response = (
                self.client.table("file_uploads")
                .select("id")
                .in_("id", list(file_ids))
                .eq("entities_enabled", True)
                .eq("entities_status", ExtractionStatus.READY.value)
                .limit(1)
                .execute()
            )
            return bool(response.data)
        except Exception as e:
            raise self._fail("Failed to check entity availability", e)

    def get_file_entity_stats(self, file_id: str) -> Dict[str, int]:
        """Entity and relationship counts for a file."""
        try:
            entities = (
                self.client.table("document_entities")
                .select("id", count="exact")
                .eq("file_id", file_id)
                .execute()
            )
            relationships = (
                self.client.table("entity_relationships")
                .select("id", count="exact")
                .eq("file_id", file_id)
                .execute()
            )
        except Exception as e:
            raise self._fail(f"Failed to get entity stats for file {file_id}", e)

        return {
            "entity_count": entities.count or 0,
            "relationship_count": relationships.count or 0,
        }
