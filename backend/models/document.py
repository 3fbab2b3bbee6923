"""Document data models."""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class FileStatus(str, Enum):
    """Processing status of an uploaded file."""
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


@dataclass
class Page:
    """Represents a single page of extracted text."""
    page_number: int
    text: str


@dataclass
class ExtractedContent:
    """Text extracted from one uploaded file.

    When ``pages`` is set each page is chunked independently so page numbers
    survive into the chunks; otherwise ``text`` is chunked as one blob.
    """
    text: str
    pages: Optional[List[Page]] = None
    title: Optional[str] = None
