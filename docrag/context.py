"""Process-lifetime services.

The database pool and the provider client are acquired once, when the
process starts serving, and released when it stops. Everything else is
built on top of them and passed around explicitly.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog

from docrag import config
from docrag.db import Database
from docrag.llm_client import create_provider_client
from docrag.rag.chunker import TextChunker
from docrag.rag.embedder import EmbeddingGenerator
from docrag.rag.ingest import IngestPipeline
from docrag.rag.orchestrator import RAGOrchestrator
from docrag.rag.retriever import Retriever
from docrag.rag.store_faiss import FAISSVectorIndex

logger = structlog.get_logger()


@dataclass
class ServiceContext:
    """Everything a request handler or CLI needs."""

    db: Database
    provider: object
    embedder: EmbeddingGenerator
    vector_index: FAISSVectorIndex
    retriever: Retriever
    orchestrator: RAGOrchestrator
    pipeline: IngestPipeline

    @classmethod
    def build(
        cls,
        db: Database,
        provider,
        generator=None,
        index_dir: Optional[Path] = None,
        chunker: TextChunker = None,
    ) -> "ServiceContext":
        """Wire the pipeline components around an open store and provider.

        Args:
            db: Open document store
            provider: Embedding provider (also the generator unless one is given)
            generator: Generation provider (default: `provider`)
            index_dir: Directory for vector index files (default: DATA_DIR)
            chunker: Default chunker for ingestion
        """
        embedder = EmbeddingGenerator(provider, db)
        vector_index = FAISSVectorIndex(db, index_dir=index_dir)
        retriever = Retriever(db, vector_index)
        orchestrator = RAGOrchestrator(db, embedder, retriever, generator or provider)
        pipeline = IngestPipeline(db, embedder, vector_index, chunker=chunker)

        return cls(
            db=db,
            provider=provider,
            embedder=embedder,
            vector_index=vector_index,
            retriever=retriever,
            orchestrator=orchestrator,
            pipeline=pipeline,
        )


@asynccontextmanager
async def open_services(
    db_path: Optional[Path] = None,
    provider_name: Optional[str] = None,
) -> AsyncIterator[ServiceContext]:
    """Acquire the store and provider client; release both on exit.

    Raises:
        ConfigurationError: If the provider is unknown or misconfigured
        StoreUnavailableError: If the database cannot be opened
    """
    provider = create_provider_client(provider_name)
    db = Database(db_path).open()
    try:
        async with provider:
            services = ServiceContext.build(db, provider, index_dir=config.DATA_DIR)
            logger.info("services_started", provider=provider.provider_name, db_path=str(db.db_path))
            yield services
    finally:
        db.close()
        logger.info("services_stopped")
