"""Token-budgeted context assembly and source citations."""
import logging
import math
from dataclasses import dataclass, field
from typing import List
from urllib.parse import quote

from models.api import Source
from models.chunk import RetrievedChunk

logger = logging.getLogger(__name__)

TOKENS_PER_CHAR = 0.25
SNIPPET_LENGTH = 200


@dataclass
class AssembledContext:
    """Prompt context and the chunks that made it in, in rank order."""
    context: str
    used_chunks: List[RetrievedChunk] = field(default_factory=list)


def citation_marker(chunk: RetrievedChunk) -> str:
    """[Source: file.pdf, Page 3, Section: "Intro", Chunk 7] from the parts available."""
    parts = [chunk.filename]
    if chunk.page:
        parts.append(f"Page {chunk.page}")
    if chunk.section:
        parts.append(f'Section: "{chunk.section}"')
    if chunk.chunk_index is not None:
        parts.append(f"Chunk {chunk.chunk_index}")
    return f"[Source: {', '.join(parts)}]"


class ContextAssembler:
    """Packs ranked chunks into a prompt context under a token budget."""

    def assemble(self, chunks: List[RetrievedChunk], max_tokens: int = 8000) -> AssembledContext:
        """
        Append chunks in rank order until the next one would exceed max_tokens.

        A chunk costs ``ceil(len(content) * 0.25)`` tokens. Chunks are never
        truncated; assembly stops at the first chunk that does not fit.

        Args:
            chunks: Ranked chunks, best first
            max_tokens: Token budget for chunk content

        Returns:
            AssembledContext with the cited context and the used chunks
        """
        sections = []
        used: List[RetrievedChunk] = []
        token_count = 0

        for chunk in chunks:
            cost = math.ceil(len(chunk.content) * TOKENS_PER_CHAR)
            if token_count + cost > max_tokens:
                break
            sections.append(f"{citation_marker(chunk)}\n{chunk.content}")
            token_count += cost
            used.append(chunk)

        logger.debug(f"Assembled {len(used)}/{len(chunks)} chunks, ~{token_count} tokens")
        return AssembledContext(context="\n\n".join(sections).strip(), used_chunks=used)


def chunks_to_sources(chunks: List[RetrievedChunk]) -> List[Source]:
    """Convert used chunks to citation sources with a file:// page anchor."""
    sources = []
    for chunk in chunks:
        anchor = f"#page={chunk.page}" if chunk.page else ""
        title = chunk.filename
        if chunk.page:
            title += f", Page {chunk.page}"
        if chunk.section:
            title += f" - {chunk.section}"

        snippet = chunk.content
        if len(snippet) > SNIPPET_LENGTH:
            snippet = snippet[:SNIPPET_LENGTH] + "..."

        score = chunk.combined_score if chunk.combined_score is not None else chunk.similarity
        sources.append(Source(
            id=chunk.id,
            title=title,
            url=f"file://{quote(chunk.filename, safe='')}{anchor}",
            content=chunk.content,
            snippet=snippet,
            retrieval_method=chunk.retrieval_method.value,
            score=score,
        ))
    return sources
