"""Named FAISS vector index over the embedding collection.

Handles:
- Index lifecycle: absent -> creating -> ready (failed builds return to absent)
- Building from the stored embeddings and persisting to disk
- Appending new embeddings to a ready index
- Cosine similarity search (vectors are L2-normalised, scored by inner product)
"""
import asyncio
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np
import structlog

from docrag import config
from docrag.db import Database
from docrag.errors import ConfigurationError, DataIntegrityError, IndexUnavailableError

logger = structlog.get_logger()

INDEX_TYPES = ("flat", "hnsw")
HNSW_NEIGHBORS = 32


class IndexStatus(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"


def normalize(vectors: np.ndarray) -> np.ndarray:
    """Return a float32 copy of `vectors` with unit-length rows."""
    matrix = np.array(vectors, dtype=np.float32, copy=True)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    faiss.normalize_L2(matrix)
    return matrix


class FAISSVectorIndex:
    """A named FAISS index whose ids are embedding record ids."""

    def __init__(
        self,
        db: Database,
        name: str = None,
        index_dir: Path = None,
        index_type: str = None,
    ):
        """Initialize the vector index handle (nothing is loaded yet).

        Args:
            db: Store holding the embedding collection and index state
            name: Index name (default from config)
            index_dir: Directory for index files (default: DATA_DIR)
            index_type: "flat" (exact) or "hnsw" (approximate)
        """
        self.db = db
        self.name = name or config.VECTOR_INDEX_NAME
        self.index_dir = Path(index_dir or config.DATA_DIR)
        self.index_type = (index_type or config.VECTOR_INDEX_TYPE).lower()

        if self.index_type not in INDEX_TYPES:
            raise ConfigurationError(
                f"Unknown vector index type '{self.index_type}'. Expected one of: {INDEX_TYPES}"
            )

        self.index_path = self.index_dir / f"{self.name}.index"
        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = None

    @property
    def status(self) -> IndexStatus:
        state = self.db.get_index_state(self.name)
        if state is None:
            return IndexStatus.ABSENT
        return IndexStatus(state["status"])

    def _new_index(self, dimension: int) -> faiss.Index:
        if self.index_type == "hnsw":
            base = faiss.IndexHNSWFlat(dimension, HNSW_NEIGHBORS, faiss.METRIC_INNER_PRODUCT)
        else:
            base = faiss.IndexFlatIP(dimension)
        return faiss.IndexIDMap(base)

    def _discard(self) -> None:
        """Forget the index: drop its state row, its file and the loaded copy."""
        self.db.delete_index_state(self.name)
        if self.index_path.exists():
            self.index_path.unlink()
        self.index = None
        self.dimension = None

    def _save(self, index: faiss.Index) -> None:
        self.index_dir.mkdir(parents=True, exist_ok=True)
        faiss.write_index(index, str(self.index_path))

    async def ensure(self) -> IndexStatus:
        """Make sure the index exists when there is anything to index.

        A ready index is left as is (and loaded if needed). An empty embedding
        collection is a no-op that leaves the index absent. A stale "creating"
        state from an interrupted build is discarded and the index rebuilt.
        """
        state = self.db.get_index_state(self.name)

        if state and state["status"] == IndexStatus.READY.value:
            if self.index is None:
                self.load()
            logger.info("vector_index_already_exists", name=self.name)
            return IndexStatus.READY

        if state and state["status"] == IndexStatus.CREATING.value:
            logger.warning("vector_index_stale_build_discarded", name=self.name)
            self._discard()

        if self.db.count_embeddings() == 0:
            logger.info("vector_index_skipped_no_embeddings", name=self.name)
            return IndexStatus.ABSENT

        return await self._create()

    async def _create(self) -> IndexStatus:
        self.db.set_index_state(self.name, IndexStatus.CREATING.value, self.index_type)
        logger.info("vector_index_creating", name=self.name, index_type=self.index_type)

        try:
            ids, vectors = self.db.load_vectors()
            dimension = int(vectors.shape[1])
            index = self._new_index(dimension)
            index.add_with_ids(normalize(vectors), ids)

            self._save(index)
            self.index = index
            self.dimension = dimension
            self.db.set_index_state(
                self.name,
                IndexStatus.READY.value,
                self.index_type,
                dimension=dimension,
                vector_count=int(index.ntotal),
            )
        except Exception as e:
            logger.error("vector_index_creation_failed", name=self.name, error=str(e))
            self._discard()
            raise

        logger.info(
            "vector_index_ready",
            name=self.name,
            dimension=self.dimension,
            vector_count=int(self.index.ntotal),
        )
        return IndexStatus.READY

    async def rebuild(self) -> IndexStatus:
        """Drop and rebuild the index from every stored embedding."""
        logger.warning("rebuilding_vector_index", name=self.name)
        self._discard()
        if self.db.count_embeddings() == 0:
            return IndexStatus.ABSENT
        return await self._create()

    def load(self) -> None:
        """Load a ready index from disk.

        Raises:
            IndexUnavailableError: If the index is not ready or its file is unreadable
        """
        state = self.db.get_index_state(self.name)
        if not state or state["status"] != IndexStatus.READY.value:
            raise IndexUnavailableError(f"Vector index '{self.name}' is not ready")
        if not self.index_path.exists():
            raise IndexUnavailableError(f"Vector index file missing: {self.index_path}")

        try:
            self.index = faiss.read_index(str(self.index_path))
        except RuntimeError as e:
            raise IndexUnavailableError(f"Failed to load vector index: {e}") from e

        self.dimension = state["dimension"]
        logger.info(
            "vector_index_loaded",
            name=self.name,
            dimension=self.dimension,
            vector_count=int(self.index.ntotal),
        )

    async def add(self, embedding_ids: Sequence[int]) -> int:
        """Append newly stored embeddings to a ready index.

        Returns:
            Number of vectors added (0 when the index is not ready)
        """
        if not embedding_ids or self.status != IndexStatus.READY:
            return 0
        if self.index is None:
            self.load()

        ids, vectors = self.db.load_vectors(embedding_ids)
        if ids.size == 0:
            return 0
        if vectors.shape[1] != self.dimension:
            raise DataIntegrityError(
                f"Embedding dimension mismatch: index has {self.dimension}, got {vectors.shape[1]}"
            )

        # Extend a copy; searches in worker threads keep the index they started with.
        index = faiss.deserialize_index(faiss.serialize_index(self.index))
        index.add_with_ids(normalize(vectors), ids)
        self._save(index)
        self.index = index
        self.db.set_index_state(
            self.name,
            IndexStatus.READY.value,
            self.index_type,
            dimension=self.dimension,
            vector_count=int(index.ntotal),
        )

        logger.info("vectors_added", name=self.name, count=int(ids.size), total_vectors=int(index.ntotal))
        return int(ids.size)

    @staticmethod
    def _search_sync(
        index: faiss.Index, query: np.ndarray, top_k: int
    ) -> Tuple[List[int], List[float]]:
        scores, indices = index.search(query, top_k)
        pairs = [
            (int(i), float(s)) for i, s in zip(indices[0].tolist(), scores[0].tolist()) if i != -1
        ]
        return [p[0] for p in pairs], [p[1] for p in pairs]

    async def search(
        self, query_vector: Sequence[float], top_k: int
    ) -> Tuple[List[int], List[float]]:
        """Find the embedding ids closest to a query vector.

        Args:
            query_vector: Query embedding
            top_k: Number of candidates to return

        Returns:
            Tuple of (embedding_ids, cosine scores), best first

        Raises:
            IndexUnavailableError: If the index is not ready
            DataIntegrityError: If the query dimension does not match the index
        """
        if self.index is None:
            self.load()
        # add() and rebuild() replace self.index rather than mutate it.
        index, dimension = self.index, self.dimension

        query = normalize(np.asarray(query_vector, dtype=np.float32))
        if query.shape[1] != dimension:
            raise DataIntegrityError(
                f"Query dimension mismatch: expected {dimension}, got {query.shape[1]}"
            )

        top_k = min(top_k, int(index.ntotal))
        if top_k <= 0:
            return [], []

        ids, scores = await asyncio.to_thread(self._search_sync, index, query, top_k)
        logger.debug("vector_search_completed", name=self.name, top_k=top_k, results_found=len(ids))
        return ids, scores

    def get_stats(self) -> Dict[str, Any]:
        state = self.db.get_index_state(self.name)
        return {
            "name": self.name,
            "status": state["status"] if state else IndexStatus.ABSENT.value,
            "index_type": self.index_type,
            "dimension": state["dimension"] if state else None,
            "vector_count": state["vector_count"] if state else 0,
            "index_exists_on_disk": self.index_path.exists(),
        }
