"""Text chunking with overlap for the RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
Chunks are lossless: dropping each chunk's overlapping prefix and joining
the rest reproduces the source text exactly (see ``join_chunks``).
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import structlog

from metarag.config import ChunkConfig
from metarag.rag.document import Document

logger = structlog.get_logger()

MARKDOWN_SEPARATORS = (
    "\n# ",
    "\n## ",
    "\n### ",
    "\n#### ",
    "\n##### ",
    "\n###### ",
    "\n```",
    "\n\n",
    "\n",
    " ",
    "",
)


@dataclass
class Chunk:
    """A chunk of text with position information and metadata."""

    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    chunk_index: int = 0
    char_start: int = 0
    char_end: int = 0
    # Leading characters repeated from the preceding chunk
    overlap: int = 0

    @property
    def body(self) -> str:
        """Text without the overlapping prefix."""
        return self.text[self.overlap:]


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(self, chunk_config: ChunkConfig = None):
        """Initialize the text chunker.

        Args:
            chunk_config: Chunking parameters (default from config)
        """
        self.config = chunk_config or ChunkConfig()

        logger.info(
            "chunker_initialized",
            strategy=self.config.strategy,
            chunk_size=self.config.size,
            chunk_overlap=self.config.overlap,
        )

    @property
    def chunk_size(self) -> int:
        return self.config.size

    @property
    def chunk_overlap(self) -> int:
        return self.config.overlap

    def _separators(self) -> Sequence[str]:
        strategy = self.config.strategy
        if strategy == "character":
            return (self.config.separator,)
        if strategy == "markdown":
            return MARKDOWN_SEPARATORS
        ordered = []
        for sep in (self.config.separator, "\n\n", "\n", ". ", " ", ""):
            if sep not in ordered:
                ordered.append(sep)
        return tuple(ordered)

    def chunk(self, document: Document) -> List[Chunk]:
        """Split a document into ordered, overlapping chunks.

        Each chunk carries a copy of the document's metadata.

        Args:
            document: Document to chunk

        Returns:
            List of Chunk objects (empty for an empty document)
        """
        chunks = self.chunk_text(document.text)
        for chunk in chunks:
            chunk.metadata = dict(document.metadata)
        return chunks

    def chunk_text(self, text: str) -> List[Chunk]:
        """Split text into overlapping chunks.

        Args:
            text: Text to chunk

        Returns:
            List of Chunk objects
        """
        if not text:
            return []

        limit = self.config.size - self.config.overlap
        pieces = self._split(text, self._separators(), limit)
        chunks = self._merge(text, pieces)

        logger.info(
            "text_chunked",
            text_length=len(text),
            chunk_count=len(chunks),
            avg_chunk_size=sum(len(c.text) for c in chunks) // len(chunks),
        )

        return chunks

    def _split(self, text: str, separators: Sequence[str], limit: int) -> List[str]:
        """Recursively split text into contiguous pieces of at most ``limit``.

        A piece no remaining separator can break is returned whole.
        """
        if len(text) <= limit:
            return [text]

        for i, separator in enumerate(separators):
            if separator == "" or separator in text:
                remaining = separators[i + 1:]
                break
        else:
            return [text]

        at_start = self.config.strategy == "markdown"
        pieces = []
        for piece in _split_keeping(text, separator, at_start):
            if len(piece) > limit and remaining:
                pieces.extend(self._split(piece, remaining, limit))
            else:
                pieces.append(piece)
        return pieces

    def _merge(self, text: str, pieces: List[str]) -> List[Chunk]:
        """Pack pieces greedily into chunks, prefixing each with overlap.

        The first chunk may use the full size; later chunks leave room for
        the overlapping prefix taken from the text just before them.
        """
        size = self.config.size
        overlap = self.config.overlap

        chunks: List[Chunk] = []
        start = 0
        body_length = 0

        def emit():
            prefix = min(overlap, start)
            end = start + body_length
            chunks.append(
                Chunk(
                    text=text[start - prefix:end],
                    chunk_index=len(chunks),
                    char_start=start - prefix,
                    char_end=end,
                    overlap=prefix,
                )
            )

        for piece in pieces:
            budget = size - min(overlap, start)
            if body_length and body_length + len(piece) > budget:
                emit()
                start += body_length
                body_length = 0
            body_length += len(piece)

        if body_length:
            emit()

        return chunks

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.config.overlap,
        }


def _split_keeping(text: str, separator: str, at_start: bool) -> List[str]:
    """Split on separator, keeping it attached so pieces concatenate to text."""
    if separator == "":
        return list(text)

    parts = text.split(separator)
    if at_start:
        pieces = [parts[0]] + [separator + part for part in parts[1:]]
    else:
        pieces = [part + separator for part in parts[:-1]] + [parts[-1]]
    return [piece for piece in pieces if piece]


def join_chunks(chunks: Sequence[Chunk]) -> str:
    """Reconstruct the source text from its chunks."""
    return "".join(chunk.body for chunk in chunks)


def chunk(document: Document, chunk_config: ChunkConfig = None) -> List[Chunk]:
    """Chunk a document (convenience function).

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    return TextChunker(chunk_config).chunk(document)
