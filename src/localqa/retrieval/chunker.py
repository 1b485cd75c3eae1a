"""
Chunker - Split documents into overlapping, size-bounded segments.

Implements:
- Word-counted chunk size and overlap
- Early window ends at paragraph breaks near the window's end
- A hard character bound, splitting over-long words and whitespace runs if needed
- Deterministic chunk IDs
- Full coverage: every character of the document lies in some chunk
"""

import logging
import re
from typing import List, Optional, Tuple

from ..core.config import ChunkingConfig
from ..core.types import Chunk, Document
from ..core.utils import compute_content_hash, generate_chunk_id

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"\S+")
_PARAGRAPH_BREAK = re.compile(r"\n[ \t\r\f\v]*\n")


class Chunker:
    """
    Chunks documents into retrieval units.

    Produces deterministic chunks with stable IDs for idempotent re-indexing.

    Example:
        >>> chunker = Chunker(ChunkingConfig(chunk_size=100, overlap=20))
        >>> chunks = chunker.chunk(document)
    """

    def __init__(self, policy: Optional[ChunkingConfig] = None):
        """
        Initialize the chunker.

        Args:
            policy: Chunking policy (uses default if not provided)

        Raises:
            ConfigError: If the policy is out of range
        """
        self.policy = policy or ChunkingConfig()
        self.policy.validate()

    def chunk(self, document: Document) -> List[Chunk]:
        """
        Split a document into chunks.

        Args:
            document: Document to chunk

        Returns:
            Ordered list of Chunk objects without vectors; empty only for
            empty text
        """
        if not document.text:
            return []

        raw_chunks = chunk_text(
            document.text,
            chunk_size=self.policy.chunk_size,
            overlap=self.policy.overlap,
            max_chunk_chars=self.policy.max_chunk_chars,
            boundary_tolerance=self.policy.boundary_tolerance,
        )

        if len(raw_chunks) > 1:
            min_chars = max(self.policy.min_chunk_chars, 1)
            kept = [c for c in raw_chunks if len(c[0].strip()) >= min_chars]
            raw_chunks = kept or raw_chunks[:1]

        if len(raw_chunks) > self.policy.max_chunks_per_document:
            logger.warning(
                f"Document {document.document_id} has {len(raw_chunks)} chunks, "
                f"limiting to {self.policy.max_chunks_per_document}"
            )
            raw_chunks = raw_chunks[:self.policy.max_chunks_per_document]

        chunks = []
        for ordinal, (content, start_offset, end_offset) in enumerate(raw_chunks):
            content_hash = compute_content_hash(content)
            chunks.append(Chunk(
                chunk_id=generate_chunk_id(
                    document_id=document.document_id,
                    ordinal=ordinal,
                    content_sha256=content_hash,
                    policy_version=self.policy.version,
                ),
                document_id=document.document_id,
                ordinal=ordinal,
                text=content,
                start_offset=start_offset,
                end_offset=end_offset,
                content_sha256=content_hash,
            ))

        logger.debug(f"Created {len(chunks)} chunks from document {document.document_id}")
        return chunks


def _word_spans(text: str, max_chars: int) -> List[Tuple[int, int]]:
    """Character spans of whitespace-delimited words, over-long words cut to max_chars."""
    spans = []
    for match in _WORD_PATTERN.finditer(text):
        start, end = match.span()
        while end - start > max_chars:
            spans.append((start, start + max_chars))
            start += max_chars
        spans.append((start, end))
    return spans


def _pieces(start: int, end: int, max_chars: int) -> List[Tuple[int, int]]:
    return [(i, min(i + max_chars, end)) for i in range(start, end, max_chars)]


def chunk_text(
    text: str,
    chunk_size: int = 300,
    overlap: int = 50,
    max_chunk_chars: int = 2048,
    boundary_tolerance: float = 0.25,
) -> List[Tuple[str, int, int]]:
    """
    Split text into overlapping chunks.

    chunk_size and overlap count words. A window may end early at a
    paragraph break that falls within the last boundary_tolerance share of
    the window, and is shrunk until its text fits max_chunk_chars.
    Consecutive chunks share `overlap` words, or abut exactly when no
    overlap is possible, so the chunks jointly cover every character.
    Whitespace that cannot fit beside a chunk's words within
    max_chunk_chars is returned as whitespace-only chunks.

    Args:
        text: Text content to chunk
        chunk_size: Target size of each chunk in words
        overlap: Words shared between consecutive chunks
        max_chunk_chars: Upper bound on a chunk's length in characters
        boundary_tolerance: Fraction of chunk_size searched for a paragraph break

    Returns:
        List of tuples: (chunk_content, start_offset, end_offset)
    """
    if not text:
        return []

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    if overlap < 0:
        raise ValueError("overlap must be non-negative")

    if overlap >= chunk_size:
        raise ValueError("overlap must be less than chunk_size")

    if max_chunk_chars <= 0:
        raise ValueError("max_chunk_chars must be positive")

    words = _word_spans(text, max_chunk_chars)
    if not words:
        return [(text, 0, len(text))]

    total = len(words)
    # breaks[i]: a paragraph break separates words[i - 1] and words[i]
    breaks = {
        i for i in range(1, total)
        if _PARAGRAPH_BREAK.search(text, words[i - 1][1], words[i][0])
    }
    slack = int(chunk_size * boundary_tolerance)

    chunks = []
    start = 0
    while True:
        end = min(start + chunk_size, total)

        while end - start > 1 and words[end - 1][1] - words[start][0] > max_chunk_chars:
            end -= 1

        if end < total and slack > 0:
            lower = max(start + overlap + 1, end - slack)
            for candidate in range(end, lower - 1, -1):
                if candidate in breaks:
                    end = candidate
                    break

        next_start = total if end >= total else max(end - overlap, start + 1)

        span_start = 0 if start == 0 else words[start][0]
        if end >= total:
            span_end = len(text)
        elif next_start < end:
            span_end = words[end - 1][1]
        else:
            # No shared words: run up to the next chunk so nothing falls between
            span_end = words[end][0]

        core_start, core_end = words[start][0], words[end - 1][1]
        room = max_chunk_chars - (core_end - core_start)
        lead = min(core_start - span_start, room)
        trail = min(span_end - core_end, room - lead)
        chunk_start, chunk_end = core_start - lead, core_end + trail

        # whitespace the bounded chunk cannot hold is emitted as chunks of its own
        for piece_start, piece_end in _pieces(span_start, chunk_start, max_chunk_chars):
            chunks.append((text[piece_start:piece_end], piece_start, piece_end))
        chunks.append((text[chunk_start:chunk_end], chunk_start, chunk_end))
        for piece_start, piece_end in _pieces(chunk_end, span_end, max_chunk_chars):
            chunks.append((text[piece_start:piece_end], piece_start, piece_end))

        if end >= total:
            break
        start = next_start

    return chunks
