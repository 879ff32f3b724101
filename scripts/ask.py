#!/usr/bin/env python
"""Ask questions against the ingested documents.

Usage:
    python scripts/ask.py                          # Run the sample questions
    python scripts/ask.py "What is chunking?"      # Ask one question
    python scripts/ask.py --stream "Explain RAG"   # Stream the answer
"""
import argparse
import asyncio
import sys
from contextlib import aclosing
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from docrag.context import open_services
from docrag.errors import ProviderError
from docrag.log_config import configure_logging

logger = structlog.get_logger()

SAMPLE_QUESTIONS = [
    "What is retrieval-augmented generation?",
    "Which chunking strategies are available?",
    "How are documents turned into embeddings?",
]


def print_sources(sources, retrieval_mode: str):
    print(f"\n  Sources ({retrieval_mode}):")
    if not sources:
        print("    (none)")
    for source in sources:
        score = f"{source.score:.3f}" if source.score is not None else "n/a"
        print(f"    - {source.document_name} [chunk {source.chunk_index}] score={score}")


async def ask(orchestrator, question: str, stream: bool):
    print(f"\n{'=' * 60}")
    print(f"  Q: {question}")
    print(f"{'=' * 60}\n")

    if stream:
        prepared, fragments = await orchestrator.stream_answer(question)
        print("  A: ", end="", flush=True)
        async with aclosing(fragments) as answer_stream:
            async for fragment in answer_stream:
                print(fragment, end="", flush=True)
        print()
        print_sources(prepared.sources, prepared.retrieval_mode.value)
    else:
        answer = await orchestrator.answer(question)
        print(f"  A: {answer.response}")
        print_sources(answer.sources, answer.retrieval_mode.value)


async def main():
    """Main entry point for the ask script."""
    parser = argparse.ArgumentParser(description="Ask questions of the RAG pipeline")
    parser.add_argument("questions", nargs="*", help="Questions to ask (default: sample questions)")
    parser.add_argument("--stream", action="store_true", help="Stream answers as they are generated")
    args = parser.parse_args()

    configure_logging()
    questions = args.questions or SAMPLE_QUESTIONS
    failures = 0

    try:
        async with open_services() as services:
            if services.db.count_embeddings() == 0:
                print("\nNo embeddings found. Run scripts/ingest.py first.\n")
                sys.exit(1)

            await services.vector_index.ensure()

            for question in questions:
                try:
                    await ask(services.orchestrator, question, args.stream)
                except ProviderError as e:
                    failures += 1
                    print(f"\n  Error: {e}\n")
                    logger.error("ask_question_failed", question=question[:100], error=str(e))

    except KeyboardInterrupt:
        print("\n\nCancelled by user.\n")
        sys.exit(1)

    except Exception as e:
        print(f"\nError: {e}\n")
        logger.error("ask_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
