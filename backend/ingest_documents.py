"""
Document Ingestion Script for DocLens.

This script:
1. Loads a PDF, .txt or .md file (or every such file in a directory)
2. Chunks each document along its sections and pages
3. Generates embeddings using HuggingFace API
4. Stores chunks in Supabase (file_chunks) and marks the upload ready

Each file must already have a row in file_uploads; pass its id with
--file-id (single file) or let the script look it up by filename.

Usage:
    python ingest_documents.py path/to/report.pdf --user-id <uuid> --file-id <uuid>
    python ingest_documents.py path/to/docs/ --user-id <uuid> [--reprocess]
"""
import argparse
import os
import sys
import logging
from pathlib import Path
from typing import Optional

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from services.document_loader import SUPPORTED_FILE_TYPES, file_type_of
from services.embedding_model import EmbeddingModel
from services.ingestion_pipeline import IngestionPipeline
from services.vector_store import VectorStore
from config import HUGGINGFACE_API_KEY, SUPABASE_URL, SUPABASE_KEY

logger = logging.getLogger(__name__)


def find_file_id(vector_store: VectorStore, user_id: str, filename: str) -> Optional[str]:
    """Look up the upload row for a filename owned by user_id."""
    response = (
        vector_store.client.table(vector_store.files_table)
        .select("id")
        .eq("user_id", user_id)
        .eq("filename", filename)
        .limit(1)
        .execute()
    )
    return response.data[0]["id"] if response.data else None


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chunk, embed and store documents for DocLens")
    parser.add_argument("path", help="File or directory to ingest")
    parser.add_argument("--user-id", required=True, help="Owner of the uploads")
    parser.add_argument("--file-id", help="file_uploads id (single file only)")
    parser.add_argument("--reprocess", action="store_true", help="Delete existing chunks first")
    parser.add_argument("--skip-warmup", action="store_true", help="Do not warm up the embedding model")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main ingestion process."""
    args = parse_args(argv)
    path = Path(args.path)

    if path.is_dir():
        files = sorted(p for p in path.iterdir() if file_type_of(p.name) in SUPPORTED_FILE_TYPES)
        if args.file_id:
            logger.error("--file-id can only be used with a single file")
            return 2
    elif path.is_file():
        files = [path]
    else:
        logger.error(f"Path not found: {path}")
        return 2

    if not files:
        logger.error(f"No supported files ({', '.join(SUPPORTED_FILE_TYPES)}) in {path}")
        return 1

    try:
        logger.info("=" * 60)
        logger.info(f"Starting DocLens ingestion of {len(files)} file(s)")
        logger.info("=" * 60)

        embedding_model = EmbeddingModel(api_key=HUGGINGFACE_API_KEY)
        vector_store = VectorStore(supabase_url=SUPABASE_URL, supabase_key=SUPABASE_KEY)
        pipeline = IngestionPipeline(vector_store, embedding_model)

        if not args.skip_warmup:
            logger.info("Warming up embedding model (may take 15-20 seconds on first run)...")
            embedding_model.warmup()

        failures = 0
        total_chunks = 0
        for filepath in files:
            file_id = args.file_id or find_file_id(vector_store, args.user_id, filepath.name)
            if not file_id:
                logger.error(f"No upload row for {filepath.name}; skipping")
                failures += 1
                continue

            try:
                if args.reprocess:
                    count = pipeline.reprocess_file(file_id, args.user_id, os.fspath(filepath))
                else:
                    count = pipeline.process_file(file_id, args.user_id, os.fspath(filepath))
                total_chunks += count
                logger.info(f"  ✓ {filepath.name}: {count} chunks")
            except Exception as e:
                failures += 1
                logger.error(f"  ✗ {filepath.name}: {e}")

        logger.info("=" * 60)
        logger.info(f"INGESTION COMPLETE: {len(files) - failures} succeeded, {failures} failed, "
                    f"{total_chunks} chunks stored")
        logger.info("=" * 60)
        return 1 if failures else 0

    except KeyboardInterrupt:
        logger.warning("Ingestion interrupted by user")
        return 1
    except Exception as e:
        logger.error(f"Ingestion failed: {str(e)}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
