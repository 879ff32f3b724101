"""Batched embedding generation for stored chunks.

Chunks move from processed=False to processed=True only when their vector
has been persisted. Anything that goes wrong for a single chunk (or a whole
batch) leaves those chunks unprocessed so a later run retries them.
"""
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import structlog

from docrag import config
from docrag.db import Chunk, Database
from docrag.errors import DataIntegrityError, ProviderError
from docrag.llm_client import EmbeddingProvider

logger = structlog.get_logger()

Vector = List[float]


@dataclass
class EmbeddingStats:
    """Outcome of one embedding pass."""

    chunks_seen: int = 0
    embeddings_generated: int = 0
    chunks_skipped: int = 0
    chunks_failed: int = 0
    batches_failed: int = 0
    embedding_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "chunks_seen": self.chunks_seen,
            "embeddings_generated": self.embeddings_generated,
            "chunks_skipped": self.chunks_skipped,
            "chunks_failed": self.chunks_failed,
            "batches_failed": self.batches_failed,
        }


def _valid_vector(value) -> Optional[Vector]:
    """Return value as a vector if it is a non-empty list of finite numbers."""
    if not isinstance(value, (list, tuple)) or not value:
        return None
    try:
        vector = [float(x) for x in value]
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(x) for x in vector):
        return None
    return vector


class EmbeddingGenerator:
    """Calls an embedding provider in fixed-size batches and stores the vectors."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        db: Database,
        batch_size: int = None,
    ):
        """Initialize the generator.

        Args:
            provider: Embedding provider
            db: Document store the chunks and embeddings live in
            batch_size: Texts per provider request (default from config)
        """
        self.provider = provider
        self.db = db
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE

    async def _embed_one_batch(self, texts: Sequence[str]) -> List[Optional[Vector]]:
        raw = await self.provider.embed(list(texts))

        if len(raw) != len(texts):
            logger.warning(
                "embedding_count_mismatch",
                requested=len(texts),
                returned=len(raw),
            )

        vectors: List[Optional[Vector]] = []
        for position in range(len(texts)):
            value = raw[position] if position < len(raw) else None
            vector = _valid_vector(value)
            if vector is None and position < len(raw):
                logger.warning("embedding_malformed", position=position)
            vectors.append(vector)
        return vectors

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[Vector]]:
        """Embed texts in batches of `batch_size`.

        Returns:
            One entry per input text; None where the provider returned nothing usable

        Raises:
            ProviderError: If a provider request fails
        """
        vectors: List[Optional[Vector]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            vectors.extend(await self._embed_one_batch(batch))
        return vectors

    async def embed_query(self, text: str) -> Vector:
        """Embed a single query.

        Raises:
            ProviderError: If the provider fails or returns no usable vector
        """
        vectors = await self._embed_one_batch([text])
        if vectors[0] is None:
            raise ProviderError("No embedding returned for query", operation="embedding")
        logger.debug("query_embedded", dimension=len(vectors[0]))
        return vectors[0]

    async def process_pending(self, limit: Optional[int] = None) -> EmbeddingStats:
        """Embed every chunk that is not yet processed.

        Args:
            limit: Maximum number of pending chunks to consider this pass

        Returns:
            EmbeddingStats including the ids of the new embedding records
        """
        stats = EmbeddingStats()
        pending = self.db.list_unprocessed_chunks(limit=limit)
        stats.chunks_seen = len(pending)

        if not pending:
            logger.info("no_chunks_to_embed")
            return stats

        total_batches = math.ceil(len(pending) / self.batch_size)
        logger.info("embedding_started", pending_chunks=len(pending), batches=total_batches)

        for batch_number, start in enumerate(range(0, len(pending), self.batch_size), 1):
            batch = pending[start : start + self.batch_size]
            await self._process_batch(batch, batch_number, stats)

        logger.info("embedding_completed", **stats.to_dict())
        return stats

    async def _process_batch(
        self, batch: List[Chunk], batch_number: int, stats: EmbeddingStats
    ) -> None:
        sendable: List[Chunk] = []
        for chunk in batch:
            if chunk.text.strip():
                sendable.append(chunk)
            else:
                logger.warning("chunk_empty_skipped", chunk_id=chunk.id)
                stats.chunks_skipped += 1

        if not sendable:
            return

        try:
            vectors = await self._embed_one_batch([chunk.text for chunk in sendable])
        except ProviderError as e:
            logger.error(
                "embedding_batch_failed",
                batch_number=batch_number,
                batch_size=len(sendable),
                error=str(e),
                error_type=type(e).__name__,
            )
            stats.batches_failed += 1
            stats.chunks_failed += len(sendable)
            return

        for chunk, vector in zip(sendable, vectors):
            if vector is None:
                logger.warning("chunk_embedding_missing", chunk_id=chunk.id)
                stats.chunks_failed += 1
                continue

            try:
                embedding_id = self.db.store_embedding(chunk, vector)
            except DataIntegrityError as e:
                logger.error("chunk_embedding_rejected", chunk_id=chunk.id, error=str(e))
                stats.chunks_failed += 1
                continue

            stats.embeddings_generated += 1
            stats.embedding_ids.append(embedding_id)

        logger.debug(
            "embedding_batch_processed",
            batch_number=batch_number,
            batch_size=len(sendable),
            total_so_far=stats.embeddings_generated,
        )
