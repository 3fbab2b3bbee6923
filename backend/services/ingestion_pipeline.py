"""File processing: extract, chunk, embed and store."""
import logging
from typing import List, Optional

from models.chunk import Chunk
from models.document import ExtractedContent, FileStatus
from models.search import ChunkingConfig
from services.chunking_engine import ChunkingEngine
from services.document_loader import DocumentLoader
from services.embedding_model import EmbeddingModel
from services.vector_store import VectorStore

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Turns an uploaded file into stored, embedded chunks."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_model: EmbeddingModel,
        chunking_engine: Optional[ChunkingEngine] = None,
        document_loader: Optional[DocumentLoader] = None
    ):
        self.vector_store = vector_store
        self.embedding_model = embedding_model
        self.chunking_engine = chunking_engine or ChunkingEngine()
        self.document_loader = document_loader or DocumentLoader()

    def process_file(self, file_id: str, user_id: str, filepath: str) -> int:
        """Load a file from disk and process it. See process_content."""
        self.vector_store.update_file_status(file_id, FileStatus.PROCESSING)
        try:
            content = self.document_loader.load_file(filepath)
        except Exception as e:
            self._fail(file_id, e)
            raise
        return self.process_content(file_id, user_id, content)

    def process_content(
        self,
        file_id: str,
        user_id: str,
        content: ExtractedContent,
        config: Optional[ChunkingConfig] = None
    ) -> int:
        """
        Chunk, embed and store extracted content for a file.

        The file moves to ``processing`` and then ``ready`` with its chunk
        count, or ``error`` with the failure message.

        Returns:
            Number of chunks stored

        Raises:
            ValueError: If no chunks could be produced
            RuntimeError: If embedding or storage fails
        """
        self.vector_store.update_file_status(file_id, FileStatus.PROCESSING)
        try:
            chunks = self.chunking_engine.chunk(content, config)
            if not chunks:
                raise ValueError("No content could be extracted from the file")

            embeddings = self._embed(chunks)
            self.vector_store.add_chunks(file_id, user_id, chunks, embeddings)
        except Exception as e:
            self._fail(file_id, e)
            raise

        self.vector_store.update_file_status(file_id, FileStatus.READY, chunk_count=len(chunks))
        logger.info(f"Successfully processed file {file_id}: {len(chunks)} chunks created")
        return len(chunks)

    def reprocess_file(self, file_id: str, user_id: str, filepath: str) -> int:
        """Replace a file's chunks: delete the old rows, then process again."""
        self.vector_store.delete_file_chunks(file_id)
        return self.process_file(file_id, user_id, filepath)

    def _embed(self, chunks: List[Chunk]) -> List[List[float]]:
        embeddings = self.embedding_model.embed_batch([chunk.content for chunk in chunks])
        if len(embeddings) != len(chunks):
            raise RuntimeError(f"Embedding count mismatch: {len(embeddings)} for {len(chunks)} chunks")
        return embeddings

    def _fail(self, file_id: str, error: Exception) -> None:
        logger.error(f"Error processing file {file_id}: {error}")
        self.vector_store.update_file_status(file_id, FileStatus.ERROR, error_message=str(error))
