"""Document loading service: text extraction from PDF, plain text and markdown."""
import logging
import os
from typing import List, Tuple
import fitz  # PyMuPDF

from models.document import ExtractedContent, Page

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("pdf", "txt", "md")


def file_type_of(filename: str) -> str:
    """Lower-cased extension without the dot ("report.PDF" -> "pdf")."""
    return os.path.splitext(filename)[1].lstrip(".").lower()


class DocumentLoader:
    """Extracts text from uploaded files into ExtractedContent."""

    def load_file(self, filepath: str) -> ExtractedContent:
        """
        Load a file from disk.

        Raises:
            ValueError: If the file type is not supported
        """
        with open(filepath, "rb") as f:
            data = f.read()
        return self.load_bytes(data, file_type_of(filepath), title=os.path.basename(filepath))

    def load_bytes(self, data: bytes, file_type: str, title: str = None) -> ExtractedContent:
        """
        Extract content from raw file bytes.

        PDFs keep one Page per PDF page (1-indexed) so chunks carry page
        numbers. Text and markdown are returned as a single blob.

        Args:
            data: File contents
            file_type: One of SUPPORTED_FILE_TYPES
            title: Optional display title

        Returns:
            ExtractedContent

        Raises:
            ValueError: If the file type is not supported or the PDF is unreadable
        """
        file_type = file_type.lower().lstrip(".")
        if file_type not in SUPPORTED_FILE_TYPES:
            raise ValueError(f"Unsupported file type: {file_type}")

        if file_type == "pdf":
            return self._load_pdf(data, title)

        text = data.decode("utf-8", errors="replace")
        return ExtractedContent(text=text, pages=None, title=title)

    def load_directory(self, directory: str) -> List[Tuple[str, ExtractedContent]]:
        """
        Load every supported file in a directory, skipping unreadable ones.

        Returns:
            (filename, content) pairs sorted by filename
        """
        documents: List[Tuple[str, ExtractedContent]] = []

        if not os.path.exists(directory):
            logger.error(f"Documents directory not found: {directory}")
            return documents

        filenames = [f for f in os.listdir(directory) if file_type_of(f) in SUPPORTED_FILE_TYPES]
        logger.info(f"Found {len(filenames)} supported files in {directory}")

        for filename in sorted(filenames):
            try:
                content = self.load_file(os.path.join(directory, filename))
                documents.append((filename, content))
                pages = len(content.pages) if content.pages else 1
                logger.info(f"Loaded {filename}: {pages} page(s)")
            except Exception as e:
                # Skip corrupted file and continue
                logger.error(f"Error loading {filename}: {str(e)}", exc_info=True)
                continue

        return documents

    def _load_pdf(self, data: bytes, title: str = None) -> ExtractedContent:
        """Extract text page-by-page with PyMuPDF."""
        try:
            pdf_document = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ValueError(f"Failed to open PDF: {str(e)}")

        try:
            pages = []
            for page_num in range(len(pdf_document)):
                text = pdf_document[page_num].get_text()
                if text.strip():
                    pages.append(Page(page_number=page_num + 1, text=text))
            title = title or (pdf_document.metadata or {}).get("title") or None
        finally:
            pdf_document.close()

        return ExtractedContent(
            text="\n\n".join(page.text for page in pages),
            pages=pages,
            title=title
        )
