"""Tests for the chunking strategies."""
import re

import pytest

from docrag.errors import ConfigurationError
from docrag.rag.chunker import (
    ChunkingStrategy,
    TextChunker,
    chunk_text,
    delimiter_chunks,
    fixed_size_chunks,
    paragraph_chunks,
    recursive_chunks,
    sentence_chunks,
)

SAMPLE = (
    "Retrieval-augmented generation combines search with a language model. "
    "Documents are split into chunks first!\n\n"
    "Each chunk is embedded. Vectors go into an index? Queries are embedded too.\n\n\n"
    "   \n\n"
    "The closest chunks become context for the answer. " * 3
)

PARAMS = [(50, 0), (50, 10), (120, 30), (200, 199), (1000, 200)]


@pytest.mark.parametrize("strategy", [s.value for s in ChunkingStrategy])
@pytest.mark.parametrize("chunk_size,overlap", PARAMS)
def test_every_strategy_terminates_without_blank_chunks(strategy, chunk_size, overlap):
    chunks = chunk_text(SAMPLE, strategy, chunk_size=chunk_size, overlap=overlap)

    assert chunks
    assert all(chunk.strip() for chunk in chunks)


@pytest.mark.parametrize("strategy", [s.value for s in ChunkingStrategy])
def test_blank_text_yields_no_chunks(strategy):
    assert chunk_text("  \n\n \t ", strategy, chunk_size=10, overlap=2) == []


def test_fixed_size_window_positions():
    text = "".join(chr(ord("a") + i % 26) for i in range(1000))

    chunks = fixed_size_chunks(text, chunk_size=300, overlap=50)

    assert [len(c) for c in chunks] == [300, 300, 300, 250]
    for previous, current in zip(chunks, chunks[1:]):
        assert previous[-50:] == current[:50]


def test_fixed_size_reconstructs_original_text():
    text = "The quick brown fox jumps over the lazy dog. " * 40
    overlap = 25

    chunks = fixed_size_chunks(text, chunk_size=120, overlap=overlap)
    rebuilt = chunks[0] + "".join(chunk[overlap:] for chunk in chunks[1:])

    assert rebuilt == text


def test_fixed_size_drops_whitespace_windows():
    text = "abc" + " " * 20 + "def"

    chunks = fixed_size_chunks(text, chunk_size=5, overlap=0)

    assert chunks == ["abc  ", "   de", "f"]


@pytest.mark.parametrize("chunk_size,overlap", [(100, 100), (100, 150), (0, 0), (10, -1)])
def test_invalid_window_is_rejected(chunk_size, overlap):
    with pytest.raises(ConfigurationError):
        TextChunker("fixed_size", chunk_size=chunk_size, chunk_overlap=overlap)


def test_unknown_strategy_is_rejected():
    with pytest.raises(ConfigurationError, match="Unknown chunking strategy"):
        TextChunker("by_vibes", chunk_size=100, chunk_overlap=0)


def test_strategy_aliases():
    assert ChunkingStrategy.parse("fixed") is ChunkingStrategy.FIXED_SIZE
    assert ChunkingStrategy.parse("Fixed-Size") is ChunkingStrategy.FIXED_SIZE
    assert ChunkingStrategy.parse(ChunkingStrategy.SENTENCE) is ChunkingStrategy.SENTENCE


def test_sentence_strategy_keeps_short_text_whole():
    assert chunk_text("A. B. C.", "sentence", chunk_size=100) == ["A. B. C."]


def test_sentence_strategy_packs_greedily():
    text = "One two. Three four! Five six? Tail without end"

    chunks = sentence_chunks(text, chunk_size=20)

    assert chunks == ["One two. Three four!", "Five six?", "Tail without end"]


def test_sentence_longer_than_threshold_is_its_own_chunk():
    long_sentence = "x" * 50 + "."

    chunks = sentence_chunks(f"Hi. {long_sentence} Bye.", chunk_size=10)

    assert chunks == ["Hi.", long_sentence, "Bye."]


def test_delimiter_with_literal_string():
    chunks = delimiter_chunks("alpha|beta||  |gamma", chunk_size=50, overlap=0, delimiter="|")

    assert chunks == ["alpha", "beta", "gamma"]


def test_delimiter_literal_is_not_a_regex():
    chunks = delimiter_chunks("a.b.c", chunk_size=50, overlap=0, delimiter=".")

    assert chunks == ["a", "b", "c"]


def test_delimiter_with_compiled_pattern():
    chunks = delimiter_chunks("one1two22three", chunk_size=50, overlap=0, delimiter=re.compile(r"\d+"))

    assert chunks == ["one", "two", "three"]


def test_delimiter_rewindows_long_pieces():
    long_piece = "y" * 25

    chunks = delimiter_chunks(f"short\n\n{long_piece}", chunk_size=10, overlap=2)

    assert chunks[0] == "short"
    assert all(len(c) <= 10 for c in chunks)
    assert "".join([chunks[1]] + [c[2:] for c in chunks[2:]]) == long_piece


def test_empty_delimiter_is_rejected():
    with pytest.raises(ConfigurationError):
        delimiter_chunks("text", chunk_size=10, overlap=0, delimiter="")


def test_paragraph_packing_counts_separator():
    text = "aaaa\n\nbbbb\n\ncccc"

    assert paragraph_chunks(text, chunk_size=10) == ["aaaa\n\nbbbb", "cccc"]
    assert paragraph_chunks(text, chunk_size=9) == ["aaaa", "bbbb", "cccc"]


def test_semantic_matches_paragraph_packing():
    assert chunk_text(SAMPLE, "semantic", chunk_size=150) == chunk_text(
        SAMPLE, "paragraph", chunk_size=150
    )


def test_none_strategy_returns_whole_text():
    assert chunk_text(SAMPLE, "none", chunk_size=10) == [SAMPLE]


@pytest.mark.parametrize(
    "text",
    [
        "z" * 5000,
        ("word " * 800).strip(),
        "Sentence one. " + "q" * 700 + ". Sentence three.",
        "\n\n".join(["p" * 90] * 12),
    ],
)
def test_recursive_never_exceeds_chunk_size(text):
    chunks = recursive_chunks(text, chunk_size=64, overlap=8)

    assert chunks
    assert max(len(c) for c in chunks) <= 64
    assert all(c.strip() for c in chunks)


def test_recursive_keeps_fitting_text_whole():
    assert recursive_chunks("Short text.", chunk_size=64, overlap=8) == ["Short text."]


def test_chunker_assigns_dense_indexes():
    chunker = TextChunker("fixed_size", chunk_size=40, chunk_overlap=10)

    chunks = chunker.chunk_text(SAMPLE)

    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))


def test_chunk_stats():
    chunker = TextChunker("paragraph", chunk_size=100, chunk_overlap=0)

    stats = chunker.get_chunk_stats(chunker.chunk_text("aaa\n\nbbbbbb"))

    assert stats["chunk_count"] == 1
    assert stats["max_chunk_size"] == len("aaa\n\nbbbbbb")
    assert stats["strategy"] == "paragraph"
    assert chunker.get_chunk_stats([])["chunk_count"] == 0
