"""SQLite document store for the RAG pipeline.

Stores three collections plus bookkeeping:
- documents: raw documents, unique by name, with a chunked flag
- chunks: ordered chunks per document, with a processed flag
- embeddings: one vector per chunk, uniform dimensionality
- vector_indexes: lifecycle state of named FAISS indexes
- ingest_runs: statistics of past ingestion runs

A `Database` owns a small pool of connections for the life of the process;
callers check a connection out per operation.
"""
import json
import queue
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from docrag import config
from docrag.errors import DataIntegrityError, StoreUnavailableError

logger = structlog.get_logger()

# SQLite caps the number of bound parameters per statement
_MAX_PARAMS = 500

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        content TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'unknown',
        type TEXT,
        url TEXT,
        path TEXT,
        chunked INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_chunked ON documents(chunked)",
    """
    CREATE TABLE IF NOT EXISTS chunks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        chunk_index INTEGER NOT NULL,
        text TEXT NOT NULL,
        metadata_json TEXT,
        processed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        UNIQUE(document_id, chunk_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON chunks(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_processed ON chunks(processed)",
    """
    CREATE TABLE IF NOT EXISTS embeddings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chunk_id INTEGER NOT NULL UNIQUE REFERENCES chunks(id) ON DELETE CASCADE,
        vector BLOB NOT NULL,
        dimension INTEGER NOT NULL,
        text TEXT NOT NULL,
        metadata_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vector_indexes (
        name TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        index_type TEXT NOT NULL,
        dimension INTEGER,
        vector_count INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingest_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL,
        strategy TEXT NOT NULL,
        chunk_size INTEGER NOT NULL,
        chunk_overlap INTEGER NOT NULL,
        documents_processed INTEGER NOT NULL,
        chunks_created INTEGER NOT NULL,
        embeddings_generated INTEGER NOT NULL,
        index_status TEXT NOT NULL,
        metadata_json TEXT
    )
    """,
]


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _loads(value: Optional[str]) -> Dict[str, Any]:
    return json.loads(value) if value else {}


@dataclass
class Document:
    """A raw document, unique by name."""

    id: int
    name: str
    content: str
    source: str
    type: Optional[str]
    url: Optional[str]
    path: Optional[str]
    chunked: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Document":
        return cls(
            id=row["id"],
            name=row["name"],
            content=row["content"],
            source=row["source"],
            type=row["type"],
            url=row["url"],
            path=row["path"],
            chunked=bool(row["chunked"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Chunk:
    """A contiguous span of a document, the unit of embedding."""

    id: int
    document_id: int
    chunk_index: int
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Chunk":
        return cls(
            id=row["id"],
            document_id=row["document_id"],
            chunk_index=row["chunk_index"],
            text=row["text"],
            metadata=_loads(row["metadata_json"]),
            processed=bool(row["processed"]),
            created_at=row["created_at"],
        )


@dataclass
class EmbeddingRecord:
    """A stored vector with its chunk text and metadata denormalized."""

    id: int
    chunk_id: int
    vector: np.ndarray
    text: str
    metadata: Dict[str, Any]
    created_at: str

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EmbeddingRecord":
        return cls(
            id=row["id"],
            chunk_id=row["chunk_id"],
            vector=np.frombuffer(row["vector"], dtype=np.float32),
            text=row["text"],
            metadata=_loads(row["metadata_json"]),
            created_at=row["created_at"],
        )


class Database:
    """Pooled SQLite store, opened once per process."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        pool_size: Optional[int] = None,
        pool_timeout: Optional[float] = None,
    ):
        """Initialize the store (no connections are opened yet).

        Args:
            db_path: SQLite file path (default from config)
            pool_size: Number of pooled connections (default from config)
            pool_timeout: Seconds to wait for a free connection (default from config)
        """
        self.db_path = Path(db_path or config.DB_PATH)
        self.pool_size = pool_size or config.DB_POOL_SIZE
        self.pool_timeout = pool_timeout or config.DB_POOL_TIMEOUT
        self._pool: Optional[queue.Queue] = None
        self._connections: List[sqlite3.Connection] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=self.pool_timeout, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def open(self) -> "Database":
        """Open the connection pool and create the schema if needed.

        Raises:
            StoreUnavailableError: If the database file cannot be opened
        """
        if self._pool is not None:
            return self

        pool: queue.Queue = queue.Queue(maxsize=self.pool_size)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            for _ in range(self.pool_size):
                conn = self._connect()
                self._connections.append(conn)
                pool.put(conn)
        except (sqlite3.Error, OSError) as e:
            self._close_connections()
            logger.error("database_open_failed", db_path=str(self.db_path), error=str(e))
            raise StoreUnavailableError(f"Cannot open database {self.db_path}: {e}") from e

        self._pool = pool
        self.init_schema()
        logger.info("database_opened", db_path=str(self.db_path), pool_size=self.pool_size)
        return self

    def close(self) -> None:
        """Close every pooled connection."""
        if self._pool is None:
            return
        self._pool = None
        self._close_connections()
        logger.info("database_closed", db_path=str(self.db_path))

    def _close_connections(self) -> None:
        for conn in self._connections:
            conn.close()
        self._connections = []

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Check a connection out of the pool for the duration of the block."""
        pool = self._pool
        if pool is None:
            raise StoreUnavailableError("Database is not open")

        try:
            conn = pool.get(timeout=self.pool_timeout)
        except queue.Empty:
            raise StoreUnavailableError("Timed out waiting for a database connection") from None

        try:
            yield conn
        except sqlite3.OperationalError as e:
            logger.error("database_operational_error", error=str(e))
            raise StoreUnavailableError(str(e)) from e
        finally:
            pool.put(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block as one unit of work: commit on success, roll back on error."""
        with self.connection() as conn:
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def init_schema(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.debug("database_schema_ready", db_path=str(self.db_path))

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def upsert_document(
        self,
        name: str,
        content: str,
        source: str = "upload",
        type: Optional[str] = None,
        url: Optional[str] = None,
        path: Optional[str] = None,
    ) -> Tuple[Document, bool]:
        """Insert a document, or update the one with the same name.

        Updates keep `created_at` and the `chunked` flag.

        Returns:
            Tuple of (document, created)
        """
        now = utcnow()
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM documents WHERE name = ?", (name,)
            ).fetchone()
            conn.execute(
                """
                INSERT INTO documents (
                    name, content, source, type, url, path, chunked,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    content = excluded.content,
                    source = excluded.source,
                    type = excluded.type,
                    url = excluded.url,
                    path = excluded.path,
                    updated_at = excluded.updated_at
                """,
                (name, content, source, type, url, path, now, now),
            )
            row = conn.execute("SELECT * FROM documents WHERE name = ?", (name,)).fetchone()

        created = existing is None
        logger.info(
            "document_upserted",
            document_id=row["id"],
            name=name,
            created=created,
        )
        return Document.from_row(row), created

    def insert_document(
        self,
        name: str,
        content: str,
        source: str = "upload",
        type: Optional[str] = None,
        url: Optional[str] = None,
        path: Optional[str] = None,
    ) -> Document:
        """Insert a new document.

        Raises:
            DataIntegrityError: If a document with this name already exists
        """
        now = utcnow()
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO documents (
                        name, content, source, type, url, path, chunked,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (name, content, source, type, url, path, now, now),
                )
                row = conn.execute(
                    "SELECT * FROM documents WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
        except sqlite3.IntegrityError as e:
            raise DataIntegrityError(f"Document '{name}' already exists") from e

        logger.info("document_inserted", document_id=row["id"], name=name)
        return Document.from_row(row)

    def get_document(self, document_id: int) -> Optional[Document]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return Document.from_row(row) if row else None

    def get_document_by_name(self, name: str) -> Optional[Document]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE name = ?", (name,)).fetchone()
        return Document.from_row(row) if row else None

    def list_documents(self) -> List[Document]:
        with self.connection() as conn:
            rows = conn.execute("SELECT * FROM documents ORDER BY id").fetchall()
        return [Document.from_row(row) for row in rows]

    def list_unprocessed(self) -> List[Document]:
        """Documents that have not been chunked yet."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE chunked = 0 ORDER BY id"
            ).fetchall()
        return [Document.from_row(row) for row in rows]

    def mark_chunked(self, document_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE documents SET chunked = 1, updated_at = ? WHERE id = ?",
                (utcnow(), document_id),
            )

    def count_documents(self) -> int:
        with self.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def get_document_for_chunk(self, chunk_id: int) -> Optional[Document]:
        """Resolve a chunk back to its owning document."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT d.* FROM chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE c.id = ?
                """,
                (chunk_id,),
            ).fetchone()
        return Document.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def insert_chunks(
        self,
        document_id: int,
        chunks: Sequence[Tuple[str, Dict[str, Any]]],
        force: bool = False,
    ) -> List[int]:
        """Store all chunks of a document and mark it chunked, atomically.

        Args:
            document_id: Owning document
            chunks: (text, metadata) pairs in chunk order
            force: Replace the chunks of an already chunked document

        Returns:
            IDs of the inserted chunks, in order

        Raises:
            DataIntegrityError: If the document is missing, or already chunked
                and `force` is not set
        """
        now = utcnow()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT chunked FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if row is None:
                raise DataIntegrityError(f"Document {document_id} does not exist")
            if row["chunked"] and not force:
                raise DataIntegrityError(
                    f"Document {document_id} is already chunked; pass force to re-chunk"
                )

            deleted = conn.execute(
                "DELETE FROM chunks WHERE document_id = ?", (document_id,)
            ).rowcount

            chunk_ids = []
            for chunk_index, (text, metadata) in enumerate(chunks):
                cursor = conn.execute(
                    """
                    INSERT INTO chunks (
                        document_id, chunk_index, text, metadata_json,
                        processed, created_at
                    ) VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (document_id, chunk_index, text, json.dumps(metadata), now),
                )
                chunk_ids.append(cursor.lastrowid)

            conn.execute(
                "UPDATE documents SET chunked = 1, updated_at = ? WHERE id = ?",
                (now, document_id),
            )

        logger.info(
            "chunks_inserted",
            document_id=document_id,
            chunk_count=len(chunk_ids),
            replaced=deleted,
        )
        return chunk_ids

    def get_chunk(self, chunk_id: int) -> Optional[Chunk]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM chunks WHERE id = ?", (chunk_id,)).fetchone()
        return Chunk.from_row(row) if row else None

    def list_chunks(self, document_id: int) -> List[Chunk]:
        """All chunks of a document in chunk_index order."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE document_id = ? ORDER BY chunk_index",
                (document_id,),
            ).fetchall()
        return [Chunk.from_row(row) for row in rows]

    def count_chunks(self, document_id: Optional[int] = None, processed: Optional[bool] = None) -> int:
        clauses, params = [], []
        if document_id is not None:
            clauses.append("document_id = ?")
            params.append(document_id)
        if processed is not None:
            clauses.append("processed = ?")
            params.append(int(processed))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.connection() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM chunks{where}", params).fetchone()[0]

    def list_unprocessed_chunks(self, limit: Optional[int] = None) -> List[Chunk]:
        """Chunks that still need an embedding, oldest first."""
        sql = "SELECT * FROM chunks WHERE processed = 0 ORDER BY id"
        params: Tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Chunk.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def store_embedding(self, chunk: Chunk, vector: Sequence[float]) -> int:
        """Persist a chunk's embedding and mark the chunk processed, atomically.

        Raises:
            DataIntegrityError: On a malformed vector, a dimensionality that
                differs from the collection, or a chunk already embedded
        """
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1 or array.size == 0:
            raise DataIntegrityError(f"Embedding for chunk {chunk.id} is not a flat vector")
        if not np.all(np.isfinite(array)):
            raise DataIntegrityError(f"Embedding for chunk {chunk.id} has non-finite values")

        with self.transaction() as conn:
            row = conn.execute("SELECT dimension FROM embeddings LIMIT 1").fetchone()
            if row is not None and row["dimension"] != array.size:
                raise DataIntegrityError(
                    f"Embedding dimension mismatch: collection has {row['dimension']}, "
                    f"got {array.size} for chunk {chunk.id}"
                )

            try:
                cursor = conn.execute(
                    """
                    INSERT INTO embeddings (
                        chunk_id, vector, dimension, text, metadata_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.id,
                        array.tobytes(),
                        int(array.size),
                        chunk.text,
                        json.dumps(chunk.metadata),
                        utcnow(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DataIntegrityError(
                    f"Chunk {chunk.id} already has an embedding or no longer exists"
                ) from e

            conn.execute("UPDATE chunks SET processed = 1 WHERE id = ?", (chunk.id,))

        return cursor.lastrowid

    def count_embeddings(self) -> int:
        with self.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def embedding_dimension(self) -> Optional[int]:
        with self.connection() as conn:
            row = conn.execute("SELECT dimension FROM embeddings LIMIT 1").fetchone()
        return row["dimension"] if row else None

    def load_vectors(
        self, embedding_ids: Optional[Sequence[int]] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Load (ids, matrix) for all embeddings, or for the given ids.

        Returns:
            Tuple of int64 ids with shape (n,) and float32 vectors with shape (n, d)
        """
        if embedding_ids is None:
            with self.connection() as conn:
                rows = conn.execute(
                    "SELECT id, vector FROM embeddings ORDER BY id"
                ).fetchall()
        else:
            rows = self._select_by_ids("SELECT id, vector FROM embeddings", embedding_ids)

        if not rows:
            return np.empty(0, dtype=np.int64), np.empty((0, 0), dtype=np.float32)

        ids = np.array([row["id"] for row in rows], dtype=np.int64)
        matrix = np.vstack([np.frombuffer(row["vector"], dtype=np.float32) for row in rows])
        return ids, matrix

    def get_embeddings(self, embedding_ids: Sequence[int]) -> List[EmbeddingRecord]:
        """Fetch embedding records, preserving the order of `embedding_ids`.

        Unknown ids are skipped.
        """
        rows = self._select_by_ids("SELECT * FROM embeddings", embedding_ids)
        by_id = {row["id"]: EmbeddingRecord.from_row(row) for row in rows}
        return [by_id[i] for i in embedding_ids if i in by_id]

    def sample_embeddings(self, limit: int) -> List[EmbeddingRecord]:
        """Return an arbitrary bounded sample of stored embeddings."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM embeddings ORDER BY id LIMIT ?", (limit,)
            ).fetchall()
        return [EmbeddingRecord.from_row(row) for row in rows]

    def _select_by_ids(self, select: str, ids: Sequence[int]) -> List[sqlite3.Row]:
        ids = [int(i) for i in ids]
        rows: List[sqlite3.Row] = []
        with self.connection() as conn:
            for offset in range(0, len(ids), _MAX_PARAMS):
                batch = ids[offset : offset + _MAX_PARAMS]
                placeholders = ",".join("?" * len(batch))
                rows.extend(
                    conn.execute(f"{select} WHERE id IN ({placeholders})", batch).fetchall()
                )
        return rows

    # ------------------------------------------------------------------
    # Vector index state
    # ------------------------------------------------------------------

    def get_index_state(self, name: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM vector_indexes WHERE name = ?", (name,)
            ).fetchone()
        return dict(row) if row else None

    def set_index_state(
        self,
        name: str,
        status: str,
        index_type: str,
        dimension: Optional[int] = None,
        vector_count: int = 0,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO vector_indexes (
                    name, status, index_type, dimension, vector_count, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    status = excluded.status,
                    index_type = excluded.index_type,
                    dimension = excluded.dimension,
                    vector_count = excluded.vector_count,
                    updated_at = excluded.updated_at
                """,
                (name, status, index_type, dimension, vector_count, utcnow()),
            )

    def delete_index_state(self, name: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM vector_indexes WHERE name = ?", (name,))

    # ------------------------------------------------------------------
    # Ingest runs
    # ------------------------------------------------------------------

    def record_ingest_run(
        self,
        started_at: str,
        strategy: str,
        chunk_size: int,
        chunk_overlap: int,
        documents_processed: int,
        chunks_created: int,
        embeddings_generated: int,
        index_status: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Record the statistics of one ingestion run.

        Returns:
            ID of the inserted run row
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ingest_runs (
                    started_at, finished_at, strategy, chunk_size, chunk_overlap,
                    documents_processed, chunks_created, embeddings_generated,
                    index_status, metadata_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    started_at,
                    utcnow(),
                    strategy,
                    chunk_size,
                    chunk_overlap,
                    documents_processed,
                    chunks_created,
                    embeddings_generated,
                    index_status,
                    json.dumps(metadata) if metadata else None,
                ),
            )
        logger.info("ingest_run_recorded", id=cursor.lastrowid, chunks_created=chunks_created)
        return cursor.lastrowid

    def get_latest_ingest_run(self) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM ingest_runs ORDER BY id DESC LIMIT 1"
            ).fetchone()
        if not row:
            return None
        run = dict(row)
        run["metadata"] = _loads(run.pop("metadata_json"))
        return run
