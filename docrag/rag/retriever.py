"""Retriever over the embedding collection.

Returns results together with the retrieval mode:
- ranked: nearest neighbours from the vector index, re-ranked by exact cosine
- degraded: an unranked sample of stored embeddings, used when the index is
  absent, fails, or times out
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import structlog

from docrag import config
from docrag.db import Database, EmbeddingRecord
from docrag.errors import ProviderTimeoutError, StoreUnavailableError
from docrag.rag.store_faiss import FAISSVectorIndex

logger = structlog.get_logger()


class RetrievalMode(str, Enum):
    RANKED = "ranked"
    DEGRADED = "degraded"


@dataclass
class SearchHit:
    """A single retrieved chunk."""

    chunk_id: int
    embedding_id: int
    text: str
    metadata: Dict[str, Any]
    score: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "embedding_id": self.embedding_id,
            "text": self.text,
            "metadata": self.metadata,
            "score": self.score,
        }


@dataclass
class RetrievalResult:
    """Hits plus the mode that produced them."""

    mode: RetrievalMode
    hits: List[SearchHit] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.mode is RetrievalMode.DEGRADED

    def __len__(self) -> int:
        return len(self.hits)


def _cosine_scores(query: np.ndarray, records: Sequence[EmbeddingRecord]) -> np.ndarray:
    matrix = np.vstack([r.vector for r in records]).astype(np.float32)
    query = query.astype(np.float32)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    norms[norms == 0] = 1.0
    return (matrix @ query) / norms


class Retriever:
    """Vector retriever with an explicit degraded fallback."""

    def __init__(
        self,
        db: Database,
        vector_index: FAISSVectorIndex,
        top_k: int = None,
        num_candidates: int = None,
        timeout: float = None,
    ):
        """Initialize the retriever.

        Args:
            db: Store holding the embedding collection
            vector_index: Named vector index to search
            top_k: Default number of results (default from config)
            num_candidates: Candidate pool requested from the index (default from config)
            timeout: Vector search timeout in seconds (default from config)
        """
        self.db = db
        self.vector_index = vector_index
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.num_candidates = num_candidates or config.VECTOR_NUM_CANDIDATES
        self.timeout = timeout or config.VECTOR_SEARCH_TIMEOUT

    async def search(self, query_vector: Sequence[float], k: Optional[int] = None) -> RetrievalResult:
        """Find the k chunks closest to a query vector.

        Any failure of the vector search falls back to degraded mode; only an
        unavailable store propagates.
        """
        k = k or self.top_k

        try:
            hits = await self._ranked_search(query_vector, k)
        except StoreUnavailableError:
            raise
        except Exception as e:
            return self._fallback(k, e)

        logger.info(
            "retrieval_completed",
            mode=RetrievalMode.RANKED.value,
            results_returned=len(hits),
            top_score=hits[0].score if hits else None,
        )
        return RetrievalResult(mode=RetrievalMode.RANKED, hits=hits)

    async def _ranked_search(self, query_vector: Sequence[float], k: int) -> List[SearchHit]:
        pool = max(self.num_candidates, k)

        try:
            async with asyncio.timeout(self.timeout):
                candidate_ids, _ = await self.vector_index.search(query_vector, pool)
        except TimeoutError:
            raise ProviderTimeoutError(
                f"Vector search timed out after {self.timeout}s", operation="vector_search"
            ) from None

        records = self.db.get_embeddings(candidate_ids)
        if len(records) < len(candidate_ids):
            logger.warning(
                "stale_index_entries",
                candidates=len(candidate_ids),
                found=len(records),
            )
        if not records:
            return []

        scores = _cosine_scores(np.asarray(query_vector, dtype=np.float32), records)
        order = np.argsort(-scores, kind="stable")[:k]

        return [
            SearchHit(
                chunk_id=records[i].chunk_id,
                embedding_id=records[i].id,
                text=records[i].text,
                metadata=records[i].metadata,
                score=float(scores[i]),
            )
            for i in order
        ]

    def _fallback(self, k: int, error: Exception) -> RetrievalResult:
        records = self.db.sample_embeddings(k)
        logger.warning(
            "vector_search_degraded",
            error=str(error),
            error_type=type(error).__name__,
            results_returned=len(records),
        )
        hits = [
            SearchHit(
                chunk_id=r.chunk_id,
                embedding_id=r.id,
                text=r.text,
                metadata=r.metadata,
                score=None,
            )
            for r in records
        ]
        return RetrievalResult(mode=RetrievalMode.DEGRADED, hits=hits)
