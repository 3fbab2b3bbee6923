"""Chunk store over Supabase pgvector and PostgreSQL full-text search."""
import logging
from typing import Any, Dict, Iterable, List, Optional
from supabase import create_client, Client
from models.chunk import Chunk, RetrievedChunk, RetrievalMethod
from models.document import FileStatus
from config import SUPABASE_URL, SUPABASE_KEY

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 100


def row_to_retrieved_chunk(
    row: Dict[str, Any],
    similarity: float = 0.0,
    retrieval_method: RetrievalMethod = RetrievalMethod.SEMANTIC,
    keyword_score: Optional[float] = None,
    id_field: str = "id"
) -> RetrievedChunk:
    """Convert a chunk row (table select or RPC result) into a RetrievedChunk."""
    filename = row.get("filename")
    if not filename:
        # Joined selects nest the parent row: {"file_uploads": {"filename": ...}}
        upload = row.get("file_uploads")
        if isinstance(upload, list):
            upload = upload[0] if upload else None
        filename = (upload or {}).get("filename") or "Unknown"

    return RetrievedChunk(
        id=str(row[id_field]),
        content=row.get("content", ""),
        filename=filename,
        file_id=str(row.get("file_id", "")),
        similarity=similarity,
        page=row.get("page_number") or None,
        section=row.get("section_title") or None,
        chunk_index=row.get("chunk_index"),
        retrieval_method=retrieval_method,
        keyword_score=keyword_score,
    )


def format_embedding(embedding: Iterable[float]) -> str:
    """pgvector literal: "[0.1,0.2,...]"."""
    return "[" + ",".join(str(float(v)) for v in embedding) + "]"


class VectorStore:
    """Store file chunks with embeddings and search them by vector and keyword."""

    def __init__(
        self,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        client: Optional[Client] = None,
        chunks_table: str = "file_chunks",
        files_table: str = "file_uploads"
    ):
        """
        Initialize the vector store with a Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase service key
            client: Existing Supabase client to share (skips create_client)
            chunks_table: Table holding chunk rows
            files_table: Table holding file upload rows

        Raises:
            ValueError: If no client is given and credentials are missing
        """
        if client is None:
            if not supabase_url or not supabase_key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")
            client = create_client(supabase_url, supabase_key)

        self.client: Client = client
        self.chunks_table = chunks_table
        self.files_table = files_table

        logger.info(f"Initialized VectorStore with table: {chunks_table}")

    def add_chunks(
        self,
        file_id: str,
        user_id: str,
        chunks: List[Chunk],
        embeddings: List[List[float]]
    ) -> None:
        """
        Insert chunk rows with their embeddings for one file.

        Args:
            file_id: Owning file
            user_id: Owning user
            chunks: Chunks produced by the ChunkingEngine
            embeddings: One embedding per chunk, same order

        Raises:
            ValueError: If chunks is empty or lengths differ
            RuntimeError: If database operation fails
        """
        if not chunks:
            raise ValueError("Chunks list cannot be empty")
        if len(chunks) != len(embeddings):
            raise ValueError(f"Got {len(embeddings)} embeddings for {len(chunks)} chunks")

        records = [
            {
                "file_id": file_id,
                "user_id": user_id,
                "chunk_index": chunk.index,
                "content": chunk.content,
                "token_count": chunk.token_count,
                "page_number": chunk.page_number,
                "section_title": chunk.section_title,
                "embedding": embedding,
            }
            for chunk, embedding in zip(chunks, embeddings)
        ]

        try:
            for start in range(0, len(records), INSERT_BATCH_SIZE):
                batch = records[start:start + INSERT_BATCH_SIZE]
                self.client.table(self.chunks_table).insert(batch).execute()
            logger.info(f"Stored {len(records)} chunks for file {file_id}")
        except Exception as e:
            error_msg = f"Failed to store chunks for file {file_id}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    def delete_file_chunks(self, file_id: str) -> None:
        """Delete every chunk of a file."""
        try:
            self.client.table(self.chunks_table).delete().eq("file_id", file_id).execute()
            logger.info(f"Deleted chunks for file {file_id}")
        except Exception as e:
            error_msg = f"Failed to delete chunks for file {file_id}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    def search(
        self,
        query_embedding: List[float],
        file_ids: List[str],
        match_count: int = 10
    ) -> List[RetrievedChunk]:
        """
        Nearest-neighbour search restricted to file_ids (RPC search_file_chunks).

        Args:
            query_embedding: Embedding vector for the query
            file_ids: Files the caller may search
            match_count: Number of rows to return

        Returns:
            Chunks ordered by similarity, descending

        Raises:
            ValueError: If query_embedding is empty or match_count is invalid
            RuntimeError: If the RPC fails
        """
        if len(query_embedding) == 0:
            raise ValueError("Query embedding cannot be empty")

        if match_count <= 0:
            raise ValueError("match_count must be positive")

        try:
            response = self.client.rpc(
                "search_file_chunks",
                {
                    "query_embedding": format_embedding(query_embedding),
                    "file_ids": list(file_ids),
                    "match_count": match_count
                }
            ).execute()
        except Exception as e:
            error_msg = f"Failed to search vector store: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

        rows = response.data or []
        logger.debug(f"Vector search returned {len(rows)} rows")
        return [
            row_to_retrieved_chunk(row, similarity=float(row.get("similarity") or 0.0))
            for row in rows
        ]

    def keyword_search(
        self,
        search_query: str,
        file_ids: List[str],
        match_count: int = 10
    ) -> List[RetrievedChunk]:
        """
        Full-text ranked search restricted to file_ids (RPC keyword_search_chunks).

        Raises:
            RuntimeError: If the RPC fails
        """
        try:
            response = self.client.rpc(
                "keyword_search_chunks",
                {
                    "search_query": search_query,
                    "file_ids": list(file_ids),
                    "match_count": match_count
                }
            ).execute()
        except Exception as e:
            error_msg = f"Failed to run keyword search: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

        return [
            row_to_retrieved_chunk(
                row,
                similarity=0.0,
                retrieval_method=RetrievalMethod.KEYWORD,
                keyword_score=float(row.get("rank") or 0.0)
            )
            for row in response.data or []
        ]

    def fetch_file_chunks(self, file_ids: List[str]) -> List[Dict[str, Any]]:
        """
        Fetch every chunk row (with embedding and filename) for the given files.

        Used by the in-process similarity fallback.

        Raises:
            RuntimeError: If the select fails
        """
        try:
            response = (
                self.client.table(self.chunks_table)
                .select(
                    "id, content, chunk_index, page_number, section_title, file_id, "
                    f"embedding, {self.files_table}!inner(filename)"
                )
                .in_("file_id", list(file_ids))
                .execute()
            )
        except Exception as e:
            error_msg = f"Failed to fetch chunks for files {file_ids}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

        rows = response.data or []
        logger.debug(f"Fetched {len(rows)} chunk rows for {len(file_ids)} files")
        return rows

    def get_files(self, file_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch file upload rows (status and entity flags) for the given ids."""
        try:
            response = (
                self.client.table(self.files_table)
                .select("id, user_id, filename, status, entities_enabled, entities_status")
                .in_("id", list(file_ids))
                .execute()
            )
            return response.data or []
        except Exception as e:
            error_msg = f"Failed to fetch files {file_ids}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    def update_file_status(
        self,
        file_id: str,
        status: FileStatus,
        chunk_count: Optional[int] = None,
        error_message: Optional[str] = None
    ) -> None:
        """Update processing status of a file; failures are logged, not raised."""
        updates: Dict[str, Any] = {"status": status.value}
        if chunk_count is not None:
            updates["chunk_count"] = chunk_count
        if error_message is not None:
            updates["error_message"] = error_message

        try:
            self.client.table(self.files_table).update(updates).eq("id", file_id).execute()
        except Exception as e:
            logger.error(f"Failed to update status of file {file_id}: {str(e)}")

    def count(self, file_id: Optional[str] = None) -> int:
        """
        Get the number of stored chunks, optionally for one file.

        Raises:
            RuntimeError: If database operation fails
        """
        try:
            query = self.client.table(self.chunks_table).select("id", count="exact")
            if file_id:
                query = query.eq("file_id", file_id)
            response = query.execute()
            return response.count if response.count is not None else 0
        except Exception as e:
            error_msg = f"Failed to count chunks in vector store: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)
