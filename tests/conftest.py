"""Shared fixtures: a real SQLite store under tmp_path and fake providers."""
import re
import zlib
from typing import List, Optional

import pytest

from docrag.context import ServiceContext
from docrag.db import Database
from docrag.errors import ProviderError
from docrag.rag.chunker import TextChunker

DIMENSION = 16
WORD = re.compile(r"\w+")


def bag_of_words_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    """Deterministic embedding: word counts hashed into `dimension` buckets."""
    vector = [0.001] * dimension
    for word in WORD.findall(text.lower()):
        vector[zlib.crc32(word.encode("utf-8")) % dimension] += 1.0
    return vector


class FakeProvider:
    """In-process embedding and generation provider.

    Args:
        drop_last: Vectors to leave off the end of every embedding response
        fail_batches: 1-based embedding call numbers that raise ProviderError
        fragments: What `stream` yields (and `complete` joins)
        fail_stream_after: Raise ProviderError after this many fragments
    """

    provider_name = "fake"

    def __init__(
        self,
        drop_last: int = 0,
        fail_batches=(),
        fragments=("Chunking ", "splits ", "documents."),
        fail_stream_after: Optional[int] = None,
        dimension: int = DIMENSION,
    ):
        self.drop_last = drop_last
        self.fail_batches = set(fail_batches)
        self.fragments = list(fragments)
        self.fail_stream_after = fail_stream_after
        self.dimension = dimension
        self.embed_calls: List[List[str]] = []
        self.completions: List[dict] = []
        self.stream_closed = False
        self.fail_queries = False

    async def embed(self, texts):
        self.embed_calls.append(list(texts))
        if len(self.embed_calls) in self.fail_batches or self.fail_queries:
            raise ProviderError("embedding service unavailable", operation="embedding")
        vectors = [bag_of_words_vector(t, self.dimension) for t in texts]
        if self.drop_last:
            vectors = vectors[: -self.drop_last]
        return vectors

    async def complete(self, system_prompt, messages, temperature=None, max_tokens=None):
        self.completions.append({"system_prompt": system_prompt, "messages": list(messages)})
        return "".join(self.fragments)

    async def stream(self, system_prompt, messages, temperature=None, max_tokens=None):
        self.completions.append({"system_prompt": system_prompt, "messages": list(messages)})
        try:
            for count, fragment in enumerate(self.fragments):
                if self.fail_stream_after is not None and count >= self.fail_stream_after:
                    raise ProviderError("generation stream broke", operation="generation")
                yield fragment
        finally:
            self.stream_closed = True

    async def list_models(self):
        return ["fake-chat", "fake-embed"]


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.sqlite", pool_size=2, pool_timeout=1.0).open()
    yield database
    database.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(db, provider, tmp_path):
    return ServiceContext.build(
        db,
        provider,
        index_dir=tmp_path / "indexes",
        chunker=TextChunker("paragraph", chunk_size=200, chunk_overlap=0),
    )


@pytest.fixture
def add_document(db):
    """Store a document with pre-split chunks; returns (document, chunk_ids)."""

    def _add(name: str, chunks: List[str], content: Optional[str] = None):
        document, _ = db.upsert_document(name, content or "\n\n".join(chunks), source="test")
        chunk_ids = db.insert_chunks(
            document.id,
            [(text, {"file_name": name, "chunk_index": i}) for i, text in enumerate(chunks)],
        )
        return document, chunk_ids

    return _add
