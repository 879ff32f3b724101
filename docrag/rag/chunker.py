"""Text chunking strategies for the RAG pipeline.

Character-based chunking to avoid tokenizer dependencies. Every strategy is
deterministic and never emits a whitespace-only chunk.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Union

import structlog

from docrag import config
from docrag.errors import ConfigurationError

logger = structlog.get_logger()

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
PARAGRAPH_SEPARATOR = "\n\n"

# A sentence is a run of text ending in terminal punctuation, or the
# unterminated tail of the text.
SENTENCE_PATTERN = re.compile(r"[^.!?]*[.!?]+|[^.!?]+$")
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")

Delimiter = Union[str, Pattern[str]]

# Names used by the browser client
STRATEGY_ALIASES = {"fixed": "fixed_size"}


class ChunkingStrategy(str, Enum):
    """Closed set of supported chunking strategies."""

    NONE = "none"
    FIXED_SIZE = "fixed_size"
    DELIMITER = "delimiter"
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"
    RECURSIVE = "recursive"
    SEMANTIC = "semantic"

    @classmethod
    def parse(cls, value: Union[str, "ChunkingStrategy"]) -> "ChunkingStrategy":
        """Resolve a strategy name, rejecting anything outside the closed set."""
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower().replace("-", "_")
        try:
            return cls(STRATEGY_ALIASES.get(name, name))
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ConfigurationError(
                f"Unknown chunking strategy '{value}'. Expected one of: {choices}"
            ) from None

    @property
    def uses_overlap(self) -> bool:
        """Whether the strategy slides a window that needs overlap < chunk size."""
        return self in (
            ChunkingStrategy.FIXED_SIZE,
            ChunkingStrategy.DELIMITER,
            ChunkingStrategy.RECURSIVE,
        )


@dataclass
class TextChunk:
    """A chunk of text and its ordinal within the source document."""

    content: str
    chunk_index: int


def validate_window(chunk_size: int, overlap: int) -> None:
    """Reject window parameters that would never advance."""
    if chunk_size <= 0:
        raise ConfigurationError(f"Chunk size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ConfigurationError(f"Overlap must not be negative, got {overlap}")
    if overlap >= chunk_size:
        raise ConfigurationError(
            f"Overlap ({overlap}) must be less than chunk size ({chunk_size})"
        )


def _append_if_content(chunks: List[str], text: str) -> None:
    if text.strip():
        chunks.append(text)


def no_chunking(text: str) -> List[str]:
    """Return the whole document as a single chunk."""
    return [text] if text.strip() else []


def fixed_size_chunks(text: str, chunk_size: int, overlap: int) -> List[str]:
    """Sliding window: chunk i covers [i*(chunk_size-overlap), +chunk_size)."""
    validate_window(chunk_size, overlap)

    step = chunk_size - overlap
    text_length = len(text)
    chunks: List[str] = []
    start = 0

    while start < text_length:
        end = min(start + chunk_size, text_length)
        _append_if_content(chunks, text[start:end])
        start += step

    return chunks


def delimiter_chunks(
    text: str,
    chunk_size: int,
    overlap: int,
    delimiter: Optional[Delimiter] = None,
) -> List[str]:
    """Split on a delimiter, re-windowing any piece larger than chunk_size."""
    validate_window(chunk_size, overlap)

    if delimiter is None:
        pattern = PARAGRAPH_BREAK
    elif isinstance(delimiter, str):
        if not delimiter:
            raise ConfigurationError("Delimiter must not be empty")
        pattern = re.compile(re.escape(delimiter))
    else:
        pattern = delimiter

    pieces = [piece.strip() for piece in pattern.split(text) if piece and piece.strip()]

    chunks: List[str] = []
    for piece in pieces:
        if len(piece) <= chunk_size:
            chunks.append(piece)
        else:
            chunks.extend(fixed_size_chunks(piece, chunk_size, overlap))

    return chunks


def sentence_chunks(text: str, chunk_size: int) -> List[str]:
    """Greedily pack whole sentences into chunks of at most chunk_size.

    A single sentence longer than chunk_size becomes its own chunk.
    """
    chunks: List[str] = []
    current = ""

    for sentence in SENTENCE_PATTERN.findall(text):
        if current and len(current) + len(sentence) > chunk_size:
            _append_if_content(chunks, current.strip())
            current = sentence
        else:
            current += sentence

    _append_if_content(chunks, current.strip())
    return chunks


def paragraph_chunks(text: str, chunk_size: int) -> List[str]:
    """Greedily pack whole paragraphs, joined by a blank line."""
    paragraphs = [p.strip() for p in PARAGRAPH_BREAK.split(text) if p.strip()]

    chunks: List[str] = []
    current = ""

    for paragraph in paragraphs:
        projected = len(current) + len(PARAGRAPH_SEPARATOR) + len(paragraph)
        if current and projected > chunk_size:
            chunks.append(current)
            current = paragraph
        elif current:
            current += PARAGRAPH_SEPARATOR + paragraph
        else:
            current = paragraph

    _append_if_content(chunks, current)
    return chunks


def semantic_chunks(text: str, chunk_size: int) -> List[str]:
    """Approximate semantic chunking with paragraph packing.

    Boundaries are paragraph breaks, not embedding-distance shifts.
    """
    return paragraph_chunks(text, chunk_size)


def recursive_chunks(text: str, chunk_size: int, overlap: int) -> List[str]:
    """Split by paragraph, then sentence, then fixed window until each piece fits."""
    validate_window(chunk_size, overlap)
    chunks: List[str] = []

    def split(segment: str) -> None:
        if len(segment) <= chunk_size:
            _append_if_content(chunks, segment)
            return

        paragraphs = segment.split(PARAGRAPH_SEPARATOR)
        if len(paragraphs) > 1:
            for paragraph in paragraphs:
                split(paragraph)
            return

        sentences = SENTENCE_BOUNDARY.split(segment)
        if len(sentences) > 1:
            for sentence in sentences:
                split(sentence)
            return

        chunks.extend(fixed_size_chunks(segment, chunk_size, overlap))

    split(text)
    return chunks


class TextChunker:
    """Chunker bound to one validated strategy and parameter set."""

    def __init__(
        self,
        strategy: Union[str, ChunkingStrategy, None] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        delimiter: Optional[Delimiter] = None,
    ):
        """Initialize the text chunker.

        Args:
            strategy: Strategy name or enum member (default from config)
            chunk_size: Chunk size / threshold in characters (default from config)
            chunk_overlap: Overlap between windows in characters (default from config)
            delimiter: Literal string or compiled regex for the delimiter strategy

        Raises:
            ConfigurationError: If the strategy is unknown or the sizes are invalid
        """
        self.strategy = ChunkingStrategy.parse(strategy or config.CHUNK_STRATEGY)
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        self.delimiter = delimiter

        if self.strategy.uses_overlap:
            validate_window(self.chunk_size, self.chunk_overlap)
        elif self.chunk_size <= 0:
            raise ConfigurationError(
                f"Chunk size must be positive, got {self.chunk_size}"
            )

        logger.debug(
            "chunker_initialized",
            strategy=self.strategy.value,
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def split(self, text: str) -> List[str]:
        """Split text into chunk strings using the configured strategy."""
        if not text or not text.strip():
            return []
        return _DISPATCH[self.strategy](self, text)

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into indexed chunks.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects with dense 0-based indexes
        """
        pieces = self.split(text)
        chunks = [TextChunk(content=piece, chunk_index=i) for i, piece in enumerate(pieces)]

        if chunks:
            logger.info(
                "text_chunked",
                strategy=self.strategy.value,
                text_length=len(text),
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
            )

        return chunks

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks."""
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "strategy": self.strategy.value,
            "overlap": self.chunk_overlap,
        }


_DISPATCH: Dict[ChunkingStrategy, Callable[[TextChunker, str], List[str]]] = {
    ChunkingStrategy.NONE: lambda c, text: no_chunking(text),
    ChunkingStrategy.FIXED_SIZE: lambda c, text: fixed_size_chunks(
        text, c.chunk_size, c.chunk_overlap
    ),
    ChunkingStrategy.DELIMITER: lambda c, text: delimiter_chunks(
        text, c.chunk_size, c.chunk_overlap, c.delimiter
    ),
    ChunkingStrategy.SENTENCE: lambda c, text: sentence_chunks(text, c.chunk_size),
    ChunkingStrategy.PARAGRAPH: lambda c, text: paragraph_chunks(text, c.chunk_size),
    ChunkingStrategy.RECURSIVE: lambda c, text: recursive_chunks(
        text, c.chunk_size, c.chunk_overlap
    ),
    ChunkingStrategy.SEMANTIC: lambda c, text: semantic_chunks(text, c.chunk_size),
}


def chunk_text(
    text: str,
    strategy: Union[str, ChunkingStrategy],
    chunk_size: Optional[int] = None,
    overlap: Optional[int] = None,
    delimiter: Optional[Delimiter] = None,
) -> List[str]:
    """Chunk text with an explicit strategy (convenience function).

    Args:
        text: Text to chunk
        strategy: Strategy name or enum member
        chunk_size: Chunk size in characters (default from config)
        overlap: Overlap in characters (default from config)
        delimiter: Delimiter for the delimiter strategy

    Returns:
        List of chunk strings
    """
    chunker = TextChunker(
        strategy=strategy,
        chunk_size=chunk_size,
        chunk_overlap=overlap,
        delimiter=delimiter,
    )
    return chunker.split(text)
