"""Background entity extraction for a whole file."""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config import ENTITY_BATCH_SIZE, ENTITY_PARALLEL_BATCHES
from models.entity import (
    EntityExtractionResult,
    ExtractedEntity,
    ExtractionStatus,
    Mention,
    canonical_name,
)
from services.entity_extractor import EntityExtractor, first_mention_name, mention_context
from services.entity_store import EntityStore

logger = logging.getLogger(__name__)


@dataclass
class _EntityRecord:
    id: str
    name: str
    aliases: List[str]
    mention_count: int = 1


@dataclass
class _RelationshipRecord:
    id: str
    evidence_chunk_ids: List[str]


class EntityDedupMap:
    """
    Entities and relationships already written during one extraction run.

    Keys are canonical names; every alias of an entity maps to the same
    record. The map lives for one run of one file and is then discarded.
    """

    def __init__(self):
        self._by_key: Dict[str, _EntityRecord] = {}
        self._relationships: Dict[Tuple[str, str, str], _RelationshipRecord] = {}

    def __len__(self) -> int:
        return len({record.id for record in self._by_key.values()})

    @property
    def relationship_count(self) -> int:
        return len(self._relationships)

    def lookup(self, entity: ExtractedEntity) -> Optional[_EntityRecord]:
        for candidate in [entity.name] + list(entity.aliases):
            record = self._by_key.get(canonical_name(candidate))
            if record is not None:
                return record
        return None

    def resolve(self, name: str) -> Optional[str]:
        record = self._by_key.get(canonical_name(name))
        return record.id if record else None

    def register(self, record: _EntityRecord) -> None:
        for key in [record.name] + record.aliases:
            self._by_key.setdefault(canonical_name(key), record)

    def merge(self, record: _EntityRecord, entity: ExtractedEntity) -> None:
        """Count another sighting and merge new aliases (case-insensitive)."""
        seen = {canonical_name(a) for a in record.aliases}
        seen.add(canonical_name(record.name))
        for alias in [entity.name] + list(entity.aliases):
            if canonical_name(alias) not in seen:
                record.aliases.append(alias)
                seen.add(canonical_name(alias))
        record.mention_count += 1
        self.register(record)

    def get_relationship(self, key: Tuple[str, str, str]) -> Optional[_RelationshipRecord]:
        return self._relationships.get(key)

    def add_relationship(self, key: Tuple[str, str, str], record: _RelationshipRecord) -> None:
        self._relationships[key] = record


@dataclass
class ExtractionTask:
    """Observable state of one file's background extraction."""
    file_id: str
    user_id: str
    status: ExtractionStatus = ExtractionStatus.PENDING
    progress: int = 0
    entity_count: int = 0
    relationship_count: int = 0
    error: Optional[str] = None
    stopped: bool = False  # file deleted mid-run
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    # Set by disable(); checked by the writer thread before every store write
    cancelled: threading.Event = field(default_factory=threading.Event, repr=False)
    pending_write: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()


class EntityExtractionManager:
    """Starts, tracks and cancels per-file extraction tasks."""

    def __init__(
        self,
        entity_store: EntityStore,
        extractor: EntityExtractor,
        batch_size: int = ENTITY_BATCH_SIZE,
        parallel_batches: int = ENTITY_PARALLEL_BATCHES
    ):
        self.entity_store = entity_store
        self.extractor = extractor
        self.batch_size = batch_size
        self.parallel_batches = parallel_batches
        self._tasks: Dict[str, ExtractionTask] = {}

    def get_status(self, file_id: str) -> Optional[ExtractionTask]:
        return self._tasks.get(file_id)

    async def enable(self, file_id: str, user_id: str) -> ExtractionTask:
        """Flag the file for entities and start extraction in the background."""
        existing = self._tasks.get(file_id)
        if existing is not None and not existing.done:
            return existing

        await asyncio.to_thread(
            self.entity_store.set_entities_enabled, file_id, True, ExtractionStatus.PENDING
        )
        return self.start(file_id, user_id)

    def start(self, file_id: str, user_id: str) -> ExtractionTask:
        """Schedule ``run_extraction`` on the running loop."""
        extraction = ExtractionTask(file_id=file_id, user_id=user_id)
        extraction.task = asyncio.create_task(self.run_extraction(extraction))
        self._tasks[file_id] = extraction
        return extraction

    async def disable(self, file_id: str) -> None:
        """Cancel any running extraction, delete entities and clear the flags."""
        extraction = self._tasks.pop(file_id, None)
        if extraction is not None:
            extraction.cancelled.set()
            if not extraction.done:
                extraction.task.cancel()
                try:
                    await extraction.task
                except asyncio.CancelledError:
                    logger.info(f"Cancelled entity extraction for file {file_id}")

            # A batch write already in its thread outlives the cancelled task
            if extraction.pending_write is not None:
                try:
                    await extraction.pending_write
                except Exception as e:
                    logger.warning(f"In-flight entity write for {file_id} failed: {e}")

        await asyncio.to_thread(self.entity_store.delete_file_entities, file_id)
        await asyncio.to_thread(self.entity_store.set_entities_enabled, file_id, False)

    async def run_extraction(self, extraction: ExtractionTask) -> ExtractionTask:
        """
        Extract entities from every chunk of a file.

        Chunks are grouped into batches; up to ``parallel_batches`` batches
        call the LLM concurrently, and their results are written one batch
        at a time. Progress is published after each group. If the file
        disappears the run stops at the next group boundary without error.
        Other failures mark the task (and the file) as errored.
        """
        file_id = extraction.file_id
        store = self.entity_store
        extraction.status = ExtractionStatus.PROCESSING

        try:
            await asyncio.to_thread(store.update_extraction_status, file_id, ExtractionStatus.PROCESSING, 0)

            chunks = await asyncio.to_thread(store.get_file_chunks, file_id)
            logger.info(f"Extracting entities from {len(chunks)} chunks for file {file_id}")

            if chunks:
                await asyncio.to_thread(store.delete_file_entities, file_id)
                await self._process_batches(extraction, chunks)
                if extraction.stopped:
                    return extraction

            extraction.status = ExtractionStatus.READY
            extraction.progress = 100
            await asyncio.to_thread(store.update_extraction_status, file_id, ExtractionStatus.READY, 100)
            logger.info(
                f"Entity extraction complete for {file_id}: {extraction.entity_count} entities, "
                f"{extraction.relationship_count} relationships"
            )
        except Exception as e:
            extraction.status = ExtractionStatus.ERROR
            extraction.error = str(e)
            logger.error(f"Entity extraction failed for {file_id}: {e}", exc_info=True)
            await asyncio.to_thread(
                store.update_extraction_status, file_id, ExtractionStatus.ERROR, None, str(e)
            )
        finally:
            self._forget(extraction)

        return extraction

    def _forget(self, extraction: ExtractionTask) -> None:
        """Drop a finished run; its final status now lives in the store."""
        if self._tasks.get(extraction.file_id) is extraction:
            del self._tasks[extraction.file_id]

    async def _process_batches(self, extraction: ExtractionTask, chunks: List[Dict[str, Any]]) -> None:
        file_id = extraction.file_id
        batches = [chunks[i:i + self.batch_size] for i in range(0, len(chunks), self.batch_size)]
        total = len(batches)
        dedup = EntityDedupMap()
        processed = 0

        for start in range(0, total, self.parallel_batches):
            if not await asyncio.to_thread(self.entity_store.file_exists, file_id):
                logger.info(f"File {file_id} was deleted, stopping extraction")
                extraction.stopped = True
                return

            group = batches[start:start + self.parallel_batches]
            logger.info(f"Processing batches {start + 1}-{start + len(group)}/{total}")

            results = await asyncio.gather(
                *(asyncio.to_thread(self.extractor.extract_from_batch, batch) for batch in group),
                return_exceptions=True
            )

            # Map mutation is serialised: one batch at a time
            for batch, result in zip(group, results):
                if isinstance(result, Exception):
                    logger.error(f"Batch extraction raised, skipping batch: {result}")
                    result = EntityExtractionResult()
                write = asyncio.ensure_future(
                    asyncio.to_thread(self._apply_batch, extraction, dedup, batch, result)
                )
                extraction.pending_write = write
                # Shielded so disable() can wait for the thread after cancelling us
                await asyncio.shield(write)
                extraction.pending_write = None
                processed += 1

            extraction.progress = round(processed / total * 100)
            await asyncio.to_thread(
                self.entity_store.update_extraction_status,
                file_id, ExtractionStatus.PROCESSING, extraction.progress
            )

    def _apply_batch(
        self,
        extraction: ExtractionTask,
        dedup: EntityDedupMap,
        batch: List[Dict[str, Any]],
        result: EntityExtractionResult
    ) -> None:
        """Write one batch's entities, relationships and mentions."""
        if not result.entities:
            return

        store = self.entity_store
        cancelled = extraction.cancelled
        for entity in result.entities:
            if cancelled.is_set():
                return
            record = dedup.lookup(entity)
            try:
                if record is not None:
                    dedup.merge(record, entity)
                    store.update_entity(record.id, record.mention_count, record.aliases)
                else:
                    entity_id = store.insert_entity(
                        extraction.file_id, extraction.user_id, entity, batch[0]["chunk_index"]
                    )
                    dedup.register(_EntityRecord(entity_id, entity.name, list(entity.aliases)))
            except RuntimeError as e:
                logger.error(f"Skipping entity {entity.name}: {e}")

        evidence_chunk_id = str(batch[0]["id"])
        for rel in result.relationships:
            if cancelled.is_set():
                return
            source_id = dedup.resolve(rel.source)
            target_id = dedup.resolve(rel.target)
            if not source_id or not target_id or source_id == target_id:
                logger.debug(f"Skipping relationship {rel.source} -> {rel.target}")
                continue

            key = (source_id, target_id, rel.relationship_type)
            existing = dedup.get_relationship(key)
            try:
                if existing is not None:
                    if evidence_chunk_id not in existing.evidence_chunk_ids:
                        existing.evidence_chunk_ids.append(evidence_chunk_id)
                        store.update_relationship_evidence(existing.id, existing.evidence_chunk_ids)
                else:
                    rel_id = store.insert_relationship(
                        extraction.file_id, source_id, target_id,
                        rel.relationship_type, [evidence_chunk_id]
                    )
                    dedup.add_relationship(key, _RelationshipRecord(rel_id, [evidence_chunk_id]))
            except RuntimeError as e:
                logger.error(f"Skipping relationship {rel.source} -> {rel.target}: {e}")

        by_name = {entity.name: entity for entity in result.entities}
        for chunk in batch:
            content = chunk["content"]
            mentions = []
            seen = set()
            for name in self.extractor.find_mentioned_entities(content, result.entities):
                entity_id = dedup.resolve(name)
                if not entity_id or entity_id in seen:
                    continue
                seen.add(entity_id)
                mention_text = first_mention_name(content, by_name[name]) or name
                mentions.append(Mention(
                    entity_id=entity_id,
                    chunk_id=str(chunk["id"]),
                    mention_text=mention_text,
                    context=mention_context(content, mention_text),
                ))
            if cancelled.is_set():
                return
            try:
                store.insert_mentions(mentions)
            except RuntimeError as e:
                logger.error(f"Failed to store mentions for chunk {chunk['id']}: {e}")

        extraction.entity_count = len(dedup)
        extraction.relationship_count = dedup.relationship_count
