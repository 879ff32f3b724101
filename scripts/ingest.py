#!/usr/bin/env python
"""Ingest documents into the RAG pipeline.

Usage:
    python scripts/ingest.py                          # Ingest DOCS_DIR incrementally
    python scripts/ingest.py --input ./docs --force   # Re-chunk everything
    python scripts/ingest.py --rebuild-index          # Rebuild the vector index
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from docrag import config
from docrag.context import open_services
from docrag.log_config import configure_logging
from docrag.rag.chunker import ChunkingStrategy, TextChunker
from docrag.rag.ingest import IngestReport

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, name: str):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "#" * filled + "-" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {name[:30]:<30}",
            end="",
            flush=True,
        )
        if self.verbose:
            print()

    def finish(self, report: IngestReport):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Ingestion Complete")
        print(f"{'=' * 60}\n")
        print(f"  Documents processed:   {report.documents_processed}")
        print(f"  Documents skipped:     {report.documents_skipped}")
        print(f"  Documents failed:      {report.documents_failed}")
        print(f"  Chunks created:        {report.chunks_created}")
        print(f"  Embeddings generated:  {report.embeddings_generated}")
        print(f"  Embeddings failed:     {report.embeddings_failed}")
        print(f"  Vector index:          {report.index_status}")
        print(f"  Time elapsed:          {elapsed_seconds:.1f}s")

        if report.chunks_created > 0 and elapsed_seconds > 0:
            rate = report.chunks_created / elapsed_seconds
            print(f"  Chunking rate:         {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        for error in report.errors:
            print(f"  ! {error['name']}: {error['error']}")

        if report.documents_failed or report.embeddings_failed:
            print("Warning: some documents or chunks failed; re-run to retry them.")
            print("   Check logs for details.\n")


async def main():
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Chunk, embed and index documents for the RAG pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py                             # Incremental ingest of DOCS_DIR
  python scripts/ingest.py --strategy sentence --force # Re-chunk with another strategy
  python scripts/ingest.py --rebuild-index             # Rebuild the vector index
        """,
    )
    parser.add_argument(
        "--input",
        type=Path,
        default=None,
        help=f"Directory of .txt/.md/.pdf documents (default: {config.DOCS_DIR})",
    )
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in ChunkingStrategy],
        default=None,
        help=f"Chunking strategy (default: {config.CHUNK_STRATEGY})",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help=f"Chunk size in characters (default: {config.CHUNK_SIZE})",
    )
    parser.add_argument(
        "--overlap",
        type=int,
        default=None,
        help=f"Chunk overlap in characters (default: {config.CHUNK_OVERLAP})",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-chunk documents that were already chunked",
    )
    parser.add_argument(
        "--rebuild-index",
        action="store_true",
        help="Rebuild the vector index from every stored embedding",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show verbose progress output")

    args = parser.parse_args()
    configure_logging()
    progress = ProgressReporter(verbose=args.verbose)
    input_dir = args.input or config.DOCS_DIR

    try:
        chunker = TextChunker(
            strategy=args.strategy,
            chunk_size=args.chunk_size,
            chunk_overlap=args.overlap,
        )

        print("\nConfiguration:")
        print(f"   Input directory:  {input_dir}")
        print(f"   Provider:         {config.LLM_PROVIDER}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Strategy:         {chunker.strategy.value}")
        print(f"   Chunk size:       {chunker.chunk_size} chars")
        print(f"   Chunk overlap:    {chunker.chunk_overlap} chars")

        progress.start("Re-chunking Documents" if args.force else "Ingesting Documents")

        async with open_services() as services:
            report = await services.pipeline.ingest_and_index(
                input_dir=input_dir,
                force=args.force,
                chunker=chunker,
                rebuild_index=args.rebuild_index,
                progress_callback=progress.update,
            )

        progress.finish(report)

        if report.documents_failed or report.embeddings_failed:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIngestion cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\nError: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
