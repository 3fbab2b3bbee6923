"""Chunking engine with section-aware paragraph packing."""
import bisect
import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from models.chunk import Chunk
from models.document import ExtractedContent
from models.search import ChunkingConfig

logger = logging.getLogger(__name__)

PARAGRAPH_SEPARATOR = "\n\n"

# Header detection (one pattern per header style)
_MARKDOWN_HEADER = re.compile(r"^(#{1,6})\s+(.+?)\s*#*$")
_CHAPTER_HEADER = re.compile(
    r"^(Chapter|CHAPTER|Part|PART|Section|SECTION)\s+([0-9]+|[IVXLCDM]+|[A-Z])\b[.:]?(\s+.*)?$"
)
_DECIMAL_HEADER = re.compile(r"^(\d{1,3}(?:\.\d{1,3})*)\.?\s+([A-Z][^\n]*)$")
_ALL_CAPS_CHARS = re.compile(r"^[A-Z0-9][A-Z0-9 \-:,'&()/]*$")
_MAX_HEADER_LENGTH = 100

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE = re.compile(r"[^.!?]+[.!?]+")
_SENTENCE_BOUNDARY = re.compile(r"[.!?]+\s+(?=[A-Z])")
_WHITESPACE = re.compile(r"\s+")


def estimate_token_count(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class Section:
    """A detected structural section of a text."""
    title: str
    level: int
    start_offset: int


@dataclass(frozen=True)
class _Paragraph:
    start: int
    text: str


@dataclass(frozen=True)
class _Draft:
    content: str
    section_title: Optional[str]


def detect_sections(text: str) -> List[Section]:
    """
    Scan lines for structural headers.

    Recognises markdown headers, chapter/part/section markers,
    decimal-numbered headers ("2.1 Results") and all-caps headers of at
    least ten characters.

    Args:
        text: Normalised text

    Returns:
        Sections ordered by start offset
    """
    sections = []
    offset = 0
    for line in text.split("\n"):
        header = _parse_header(line.strip())
        if header:
            title, level = header
            sections.append(Section(title=title, level=level, start_offset=offset))
        offset += len(line) + 1
    return sections


def _parse_header(line: str) -> Optional[Tuple[str, int]]:
    if not line or len(line) > _MAX_HEADER_LENGTH:
        return None

    match = _MARKDOWN_HEADER.match(line)
    if match:
        return match.group(2).strip(), len(match.group(1))

    match = _CHAPTER_HEADER.match(line)
    if match:
        level = 2 if match.group(1).lower() == "section" else 1
        return line, level

    match = _DECIMAL_HEADER.match(line)
    if match and not line.endswith((".", ",", ";", ":", "!", "?")):
        return line, match.group(1).count(".") + 1

    if (
        len(line) >= 10
        and _ALL_CAPS_CHARS.match(line)
        and re.search(r"[A-Z]{2}", line)
    ):
        return line, 1

    return None


def split_sentences(text: str) -> List[str]:
    """Split text into sentences; trailing text without punctuation is kept."""
    sentences = []
    position = 0
    for match in _SENTENCE.finditer(text):
        sentences.append(match.group())
        position = match.end()
    remainder = text[position:]
    if remainder.strip():
        sentences.append(remainder)
    return [s.strip() for s in sentences if s.strip()]


class _ChunkAccumulator:
    """Greedy paragraph packer for a single page of text."""

    def __init__(self, config: ChunkingConfig, overlap_fn):
        self.config = config
        self.overlap_fn = overlap_fn
        self.parts: List[str] = []
        self.section: Optional[int] = None
        self.has_content = False
        self.drafts: List[Tuple[str, Optional[int]]] = []

    def _joined(self, extra: Optional[str] = None) -> str:
        parts = self.parts + [extra] if extra is not None else self.parts
        return PARAGRAPH_SEPARATOR.join(parts)

    def add(self, paragraph: str, section: Optional[int]) -> None:
        if section != self.section:
            if self.has_content:
                # Section boundaries always close the chunk, without overlap
                self.close(carry_overlap=False)
            else:
                self.parts = []

        if self.parts and len(self._joined(paragraph)) > self.config.max_chunk_size:
            if self.has_content:
                self.close(carry_overlap=True)
            else:
                self.parts = []
            if self.parts and len(self._joined(paragraph)) > self.config.max_chunk_size:
                self.parts = []

        self.parts.append(paragraph)
        self.section = section
        self.has_content = True

    def add_presplit(self, pieces: List[str], section: Optional[int]) -> None:
        """Emit pieces of an oversized paragraph as standalone chunks."""
        if self.has_content:
            self.close(carry_overlap=False)
        self.parts = []
        for piece in pieces:
            self.drafts.append((piece, section))
        self.section = section
        overlap = self.overlap_fn(pieces[-1]) if pieces else ""
        self.parts = [overlap] if overlap else []

    def close(self, carry_overlap: bool) -> None:
        if not self.has_content:
            self.parts = []
            return
        content = self._joined()
        self.drafts.append((content, self.section))
        overlap = self.overlap_fn(content) if carry_overlap else ""
        self.parts = [overlap] if overlap else []
        self.has_content = False


class ChunkingEngine:
    """Segments extracted document text into token-bounded, section-aligned chunks."""

    def __init__(self, config: Optional[ChunkingConfig] = None):
        """
        Initialize ChunkingEngine.

        Args:
            config: Chunk size limits in characters (defaults from config.py)
        """
        self.config = config or ChunkingConfig()

    def chunk(self, content: ExtractedContent, config: Optional[ChunkingConfig] = None) -> List[Chunk]:
        """
        Chunk extracted content into an ordered sequence of chunks.

        Pages, when present, are chunked independently so every chunk keeps
        the page number it came from.

        Args:
            content: Extracted text, optionally split into pages
            config: Per-call override of the engine's chunking config

        Returns:
            Chunks indexed sequentially from 0; empty for blank input
        """
        cfg = config or self.config

        if content.pages:
            segments = [(page.text, page.page_number) for page in content.pages]
        else:
            segments = [(content.text, None)]

        chunks: List[Chunk] = []
        for text, page_number in segments:
            drafts = self._merge_small_chunks(self._chunk_text(text or "", cfg), cfg)
            for draft in drafts:
                chunks.append(Chunk(
                    content=draft.content,
                    index=len(chunks),
                    token_count=estimate_token_count(draft.content),
                    page_number=page_number,
                    section_title=draft.section_title,
                ))

        logger.debug(f"Created {len(chunks)} chunks from {len(segments)} segment(s)")
        return chunks

    def _chunk_text(self, text: str, cfg: ChunkingConfig) -> List[_Draft]:
        """Pack one page (or the whole text) into draft chunks."""
        text = text.replace("\r\n", "\n").replace("\r", "\n").strip()
        if not text:
            return []

        sections = detect_sections(text)
        section_starts = [s.start_offset for s in sections]
        paragraphs = self._split_paragraphs(text, section_starts)

        accumulator = _ChunkAccumulator(cfg, lambda c: self._overlap_suffix(c, cfg.overlap_size))
        for paragraph in paragraphs:
            section = bisect.bisect_right(section_starts, paragraph.start) - 1
            section_key = section if section >= 0 else None
            if len(paragraph.text) > cfg.max_chunk_size:
                accumulator.add_presplit(self._split_oversized(paragraph.text, cfg), section_key)
            else:
                accumulator.add(paragraph.text, section_key)
        accumulator.close(carry_overlap=False)

        return [
            _Draft(content, sections[key].title if key is not None else None)
            for content, key in accumulator.drafts
        ]

    def _split_paragraphs(self, text: str, section_starts: List[int]) -> List[_Paragraph]:
        """Split on blank lines, and before every detected header line."""
        boundaries = [0]
        for match in _PARAGRAPH_BREAK.finditer(text):
            boundaries.append(match.end())
        boundaries.extend(start for start in section_starts if start > 0)
        boundaries = sorted(set(boundaries))

        paragraphs = []
        for i, start in enumerate(boundaries):
            end = boundaries[i + 1] if i + 1 < len(boundaries) else len(text)
            raw = text[start:end]
            stripped = raw.strip()
            if stripped:
                leading = len(raw) - len(raw.lstrip())
                paragraphs.append(_Paragraph(start=start + leading, text=stripped))
        return paragraphs

    def _overlap_suffix(self, content: str, overlap_size: int) -> str:
        """
        Take the last ``overlap_size`` characters of a closed chunk, snapped
        forward to a sentence start, else a paragraph break, else a word.
        """
        if overlap_size <= 0 or not content:
            return ""
        tail = content[-overlap_size:]

        match = _SENTENCE_BOUNDARY.search(tail)
        if match:
            return tail[match.end():].strip()

        paragraph_break = tail.find(PARAGRAPH_SEPARATOR)
        if paragraph_break != -1:
            return tail[paragraph_break + len(PARAGRAPH_SEPARATOR):].strip()

        match = _WHITESPACE.search(tail)
        if match:
            return tail[match.end():].strip()

        return ""

    def _split_oversized(self, paragraph: str, cfg: ChunkingConfig) -> List[str]:
        """Split a paragraph longer than max_chunk_size at sentence boundaries."""
        limit = cfg.max_chunk_size
        if 0 < cfg.target_chunk_size < limit:
            limit = cfg.target_chunk_size

        pieces: List[str] = []
        current = ""
        for sentence in split_sentences(paragraph):
            if len(sentence) > cfg.max_chunk_size:
                if current:
                    pieces.append(current)
                    current = ""
                pieces.extend(self._split_words(sentence, cfg.max_chunk_size))
                continue
            candidate = f"{current} {sentence}" if current else sentence
            if current and len(candidate) > limit:
                pieces.append(current)
                current = sentence
            else:
                current = candidate
        if current:
            pieces.append(current)
        return pieces

    @staticmethod
    def _split_words(sentence: str, max_size: int) -> List[str]:
        """Last resort for a single sentence longer than max_size."""
        pieces: List[str] = []
        current = ""
        for word in sentence.split():
            if len(word) > max_size:
                if current:
                    pieces.append(current)
                    current = ""
                pieces.extend(word[i:i + max_size] for i in range(0, len(word), max_size))
                continue
            candidate = f"{current} {word}" if current else word
            if len(candidate) > max_size:
                pieces.append(current)
                current = word
            else:
                current = candidate
        if current:
            pieces.append(current)
        return pieces

    @staticmethod
    def _merge_small_chunks(drafts: List[_Draft], cfg: ChunkingConfig) -> List[_Draft]:
        """
        Merge chunks shorter than min_chunk_size into their successor; an
        undersized last chunk merges into its predecessor instead. Merges
        that would exceed max_chunk_size are skipped.
        """
        if len(drafts) <= 1:
            return drafts

        merged: List[_Draft] = []
        accumulator = drafts[0]
        for draft in drafts[1:]:
            combined = accumulator.content + PARAGRAPH_SEPARATOR + draft.content
            if len(accumulator.content) < cfg.min_chunk_size and len(combined) <= cfg.max_chunk_size:
                accumulator = _Draft(combined, accumulator.section_title or draft.section_title)
            else:
                merged.append(accumulator)
                accumulator = draft

        if merged and len(accumulator.content) < cfg.min_chunk_size:
            previous = merged[-1]
            combined = previous.content + PARAGRAPH_SEPARATOR + accumulator.content
            if len(combined) <= cfg.max_chunk_size:
                merged[-1] = _Draft(combined, previous.section_title or accumulator.section_title)
                return merged

        merged.append(accumulator)
        return merged
