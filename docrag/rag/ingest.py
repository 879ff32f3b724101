"""Ingest pipeline for documents.

Orchestrates:
- Document loading and storage (upsert by name)
- Text chunking of documents not yet chunked
- Embedding generation for chunks not yet processed
- Vector index creation or extension

Every step is driven by the `chunked` / `processed` flags, so re-running the
pipeline only does the work that is still outstanding.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import structlog

from docrag.db import Database, Document, utcnow
from docrag.errors import StoreUnavailableError
from docrag.rag.chunker import TextChunker
from docrag.rag.embedder import EmbeddingGenerator
from docrag.rag.loaders import DocumentInput, DocumentLoader
from docrag.rag.store_faiss import FAISSVectorIndex, IndexStatus

logger = structlog.get_logger()


@dataclass
class DocumentResult:
    document_id: int
    name: str
    chunk_count: int
    skipped: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "name": self.name,
            "chunk_count": self.chunk_count,
            "skipped": self.skipped,
        }


@dataclass
class IngestReport:
    """Outcome of one `ingest_and_index` run."""

    documents: List[DocumentResult] = field(default_factory=list)
    documents_failed: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0
    embeddings_failed: int = 0
    index_status: str = IndexStatus.ABSENT.value
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def documents_processed(self) -> int:
        return sum(1 for d in self.documents if not d.skipped)

    @property
    def documents_skipped(self) -> int:
        return sum(1 for d in self.documents if d.skipped)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documents": [d.to_dict() for d in self.documents],
            "documents_processed": self.documents_processed,
            "documents_skipped": self.documents_skipped,
            "documents_failed": self.documents_failed,
            "chunks_created": self.chunks_created,
            "embeddings_generated": self.embeddings_generated,
            "embeddings_failed": self.embeddings_failed,
            "index_status": self.index_status,
        }


class IngestPipeline:
    """Pipeline for ingesting documents into the RAG system."""

    def __init__(
        self,
        db: Database,
        embedder: EmbeddingGenerator,
        vector_index: FAISSVectorIndex,
        chunker: TextChunker = None,
        loader: DocumentLoader = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            db: Document store
            embedder: Embedding generator for pending chunks
            vector_index: Vector index to create or extend
            chunker: Default chunker (default strategy and sizes from config)
            loader: Loader for files on disk
        """
        self.db = db
        self.embedder = embedder
        self.vector_index = vector_index
        self.chunker = chunker or TextChunker()
        self.loader = loader or DocumentLoader()

    def load_directory(self, input_dir: Path, report: IngestReport) -> List[DocumentInput]:
        """Load every supported file under a directory.

        Unreadable files are logged, counted as failed and skipped.
        """
        documents = []
        for file_path in self.loader.discover(input_dir):
            try:
                documents.append(self.loader.load_file(file_path, base_dir=input_dir))
            except Exception as e:
                logger.error("file_load_failed", path=str(file_path), error=str(e))
                report.documents_failed += 1
                name = file_path.relative_to(input_dir).as_posix()
                report.errors.append({"name": name, "error": str(e)})
        return documents

    def chunk_document(
        self, document: Document, chunker: TextChunker = None, force: bool = False
    ) -> int:
        """Chunk a stored document and persist its chunks.

        Args:
            document: Stored document
            chunker: Chunker to use (default: the pipeline's)
            force: Replace existing chunks of an already chunked document

        Returns:
            Number of chunks created

        Raises:
            DataIntegrityError: If the document is already chunked and force is not set
        """
        chunker = chunker or self.chunker
        pieces = chunker.chunk_text(document.content)

        rows = [
            (
                piece.content,
                {
                    "file_name": document.name,
                    "strategy": chunker.strategy.value,
                    "chunk_index": piece.chunk_index,
                    "total_chunks": len(pieces),
                    "chunk_size": chunker.chunk_size,
                    "overlap": chunker.chunk_overlap,
                    "source": document.source,
                    "type": document.type,
                },
            )
            for piece in pieces
        ]
        self.db.insert_chunks(document.id, rows, force=force)

        if not pieces:
            logger.warning("no_chunks_created", document_id=document.id, name=document.name)

        logger.info(
            "document_chunked",
            document_id=document.id,
            name=document.name,
            strategy=chunker.strategy.value,
            chunk_count=len(pieces),
        )
        return len(pieces)

    def _chunk_one(
        self,
        document: Document,
        chunker: TextChunker,
        force: bool,
        report: IngestReport,
    ) -> bool:
        """Chunk one document into the report; returns True if old chunks were replaced."""
        if document.chunked and not force:
            report.documents.append(
                DocumentResult(
                    document_id=document.id,
                    name=document.name,
                    chunk_count=self.db.count_chunks(document_id=document.id),
                    skipped=True,
                )
            )
            logger.info("document_already_chunked", document_id=document.id, name=document.name)
            return False

        chunk_count = self.chunk_document(document, chunker, force=force)
        report.chunks_created += chunk_count
        report.documents.append(
            DocumentResult(
                document_id=document.id,
                name=document.name,
                chunk_count=chunk_count,
                skipped=False,
            )
        )
        return document.chunked

    async def ingest_and_index(
        self,
        documents: Optional[Sequence[DocumentInput]] = None,
        input_dir: Optional[Path] = None,
        force: bool = False,
        chunker: TextChunker = None,
        rebuild_index: bool = False,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> IngestReport:
        """Store, chunk, embed and index documents.

        Safe to re-run: documents that are already chunked are skipped unless
        `force` is set, and only unprocessed chunks are embedded. Documents
        left unchunked by an earlier interrupted run are picked up as well.

        Args:
            documents: Documents to store (upserted by name)
            input_dir: Directory of .txt/.md/.pdf files to load as well
            force: Re-chunk documents that are already chunked
            chunker: Chunker for this run (default: the pipeline's)
            rebuild_index: Rebuild the vector index from every stored embedding
            progress_callback: Optional callback function(current, total, document_name)

        Returns:
            IngestReport with per-document results and totals

        Raises:
            StoreUnavailableError: If the document store cannot be reached
        """
        chunker = chunker or self.chunker
        started_at = utcnow()
        report = IngestReport()

        logger.info(
            "starting_ingest",
            documents=len(documents or []),
            input_dir=str(input_dir) if input_dir else None,
            force=force,
            strategy=chunker.strategy.value,
        )

        inputs: List[DocumentInput] = list(documents or [])
        if input_dir is not None:
            inputs.extend(self.load_directory(Path(input_dir), report))

        handled: Set[int] = set()
        replaced_chunks = False

        for idx, doc_input in enumerate(inputs, 1):
            if progress_callback:
                progress_callback(idx, len(inputs), doc_input.name)
            try:
                document, _ = self.db.upsert_document(
                    name=doc_input.name,
                    content=doc_input.content,
                    source=doc_input.source,
                    type=doc_input.type,
                    url=doc_input.url,
                    path=doc_input.path,
                )
                handled.add(document.id)
                replaced_chunks |= self._chunk_one(document, chunker, force, report)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.error("document_ingestion_failed", name=doc_input.name, error=str(e))
                report.documents_failed += 1
                report.errors.append({"name": doc_input.name, "error": str(e)})

        for document in self.db.list_unprocessed():
            if document.id in handled:
                continue
            try:
                self._chunk_one(document, chunker, False, report)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.error("document_ingestion_failed", name=document.name, error=str(e))
                report.documents_failed += 1
                report.errors.append({"name": document.name, "error": str(e)})

        embedding_stats = await self.embedder.process_pending()
        report.embeddings_generated = embedding_stats.embeddings_generated
        report.embeddings_failed = embedding_stats.chunks_failed

        report.index_status = await self._update_index(
            embedding_stats.embedding_ids, rebuild=rebuild_index or replaced_chunks
        )

        self.db.record_ingest_run(
            started_at=started_at,
            strategy=chunker.strategy.value,
            chunk_size=chunker.chunk_size,
            chunk_overlap=chunker.chunk_overlap,
            documents_processed=report.documents_processed,
            chunks_created=report.chunks_created,
            embeddings_generated=report.embeddings_generated,
            index_status=report.index_status,
            metadata={
                "documents_skipped": report.documents_skipped,
                "documents_failed": report.documents_failed,
                "embeddings_failed": report.embeddings_failed,
            },
        )

        logger.info("ingest_completed", **report.to_dict())
        return report

    async def _update_index(self, new_embedding_ids: List[int], rebuild: bool) -> str:
        """Create, extend or rebuild the vector index; returns its status."""
        try:
            if rebuild:
                status = await self.vector_index.rebuild()
            elif self.vector_index.status == IndexStatus.READY:
                await self.vector_index.add(new_embedding_ids)
                status = IndexStatus.READY
            else:
                status = await self.vector_index.ensure()
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.error("vector_index_update_failed", error=str(e), error_type=type(e).__name__)
            status = self.vector_index.status

        return status.value
