"""Tests for the SQLite document store."""
import numpy as np
import pytest

from docrag.db import Database
from docrag.errors import DataIntegrityError, StoreUnavailableError


def test_upsert_creates_then_updates(db):
    document, created = db.upsert_document("guide.md", "first", source="upload", type="md")
    assert created
    assert not document.chunked

    updated, created = db.upsert_document("guide.md", "second", source="upload", type="md")

    assert not created
    assert updated.id == document.id
    assert updated.content == "second"
    assert updated.created_at == document.created_at
    assert db.count_documents() == 1


def test_upsert_keeps_chunked_flag(db, add_document):
    document, _ = add_document("notes.txt", ["one", "two"])

    updated, _ = db.upsert_document("notes.txt", "changed")

    assert updated.chunked
    assert db.count_chunks(document_id=document.id) == 2


def test_insert_document_rejects_duplicate_name(db):
    db.insert_document("a.txt", "content")

    with pytest.raises(DataIntegrityError):
        db.insert_document("a.txt", "other content")

    assert db.get_document_by_name("a.txt").content == "content"


def test_insert_chunks_marks_document_chunked(db):
    document, _ = db.upsert_document("a.txt", "alpha beta")

    ids = db.insert_chunks(document.id, [("alpha", {}), ("beta", {"k": 1})])

    assert len(ids) == 2
    assert db.get_document(document.id).chunked
    assert db.list_unprocessed() == []
    chunks = db.list_chunks(document.id)
    assert [c.chunk_index for c in chunks] == [0, 1]
    assert chunks[1].metadata == {"k": 1}
    assert not chunks[0].processed


def test_insert_chunks_requires_force_to_rechunk(db, add_document):
    document, _ = add_document("a.txt", ["one", "two", "three"])

    with pytest.raises(DataIntegrityError):
        db.insert_chunks(document.id, [("replacement", {})])
    assert db.count_chunks(document_id=document.id) == 3

    db.insert_chunks(document.id, [("replacement", {})], force=True)
    assert [c.text for c in db.list_chunks(document.id)] == ["replacement"]


def test_mark_chunked(db):
    document, _ = db.upsert_document("a.txt", "")
    assert [d.id for d in db.list_unprocessed()] == [document.id]

    db.mark_chunked(document.id)

    assert db.list_unprocessed() == []
    assert [d.name for d in db.list_documents()] == ["a.txt"]


def test_insert_chunks_for_missing_document(db):
    with pytest.raises(DataIntegrityError):
        db.insert_chunks(999, [("orphan", {})])


def test_store_embedding_marks_chunk_processed(db, add_document):
    _, chunk_ids = add_document("a.txt", ["alpha", "beta"])
    chunk = db.get_chunk(chunk_ids[0])

    embedding_id = db.store_embedding(chunk, [0.1, 0.2, 0.3])

    assert db.get_chunk(chunk.id).processed
    assert db.count_chunks(processed=False) == 1
    assert db.embedding_dimension() == 3
    record = db.get_embeddings([embedding_id])[0]
    assert record.chunk_id == chunk.id
    assert record.text == "alpha"
    np.testing.assert_allclose(record.vector, [0.1, 0.2, 0.3], rtol=1e-6)


def test_store_embedding_rejects_other_dimension(db, add_document):
    _, chunk_ids = add_document("a.txt", ["alpha", "beta"])
    db.store_embedding(db.get_chunk(chunk_ids[0]), [1.0, 0.0, 0.0])

    with pytest.raises(DataIntegrityError, match="dimension"):
        db.store_embedding(db.get_chunk(chunk_ids[1]), [1.0, 0.0])

    assert db.count_embeddings() == 1
    assert not db.get_chunk(chunk_ids[1]).processed


@pytest.mark.parametrize("vector", [[], [[1.0, 2.0]], [1.0, float("nan")]])
def test_store_embedding_rejects_malformed_vectors(db, add_document, vector):
    _, chunk_ids = add_document("a.txt", ["alpha"])

    with pytest.raises(DataIntegrityError):
        db.store_embedding(db.get_chunk(chunk_ids[0]), vector)

    assert db.count_embeddings() == 0


def test_store_embedding_once_per_chunk(db, add_document):
    _, chunk_ids = add_document("a.txt", ["alpha"])
    chunk = db.get_chunk(chunk_ids[0])
    db.store_embedding(chunk, [1.0, 2.0])

    with pytest.raises(DataIntegrityError):
        db.store_embedding(chunk, [1.0, 2.0])


def test_rechunk_cascades_to_embeddings(db, add_document):
    document, chunk_ids = add_document("a.txt", ["alpha", "beta"])
    for chunk_id in chunk_ids:
        db.store_embedding(db.get_chunk(chunk_id), [1.0, 2.0])

    db.insert_chunks(document.id, [("gamma", {})], force=True)

    assert db.count_embeddings() == 0
    assert db.count_chunks(processed=False) == 1


def test_get_embeddings_preserves_order_and_skips_unknown(db, add_document):
    _, chunk_ids = add_document("a.txt", ["a", "b", "c"])
    ids = [db.store_embedding(db.get_chunk(c), [float(i), 1.0]) for i, c in enumerate(chunk_ids)]

    records = db.get_embeddings([ids[2], 12345, ids[0]])

    assert [r.id for r in records] == [ids[2], ids[0]]


def test_load_vectors(db, add_document):
    _, chunk_ids = add_document("a.txt", ["a", "b"])
    ids = [db.store_embedding(db.get_chunk(c), [float(i), 1.0, 2.0]) for i, c in enumerate(chunk_ids)]

    all_ids, matrix = db.load_vectors()
    assert all_ids.tolist() == ids
    assert matrix.shape == (2, 3)
    assert matrix.dtype == np.float32

    some_ids, some = db.load_vectors([ids[1]])
    assert some_ids.tolist() == [ids[1]]
    assert some.shape == (1, 3)


def test_sample_embeddings_is_bounded(db, add_document):
    _, chunk_ids = add_document("a.txt", ["a", "b", "c"])
    for c in chunk_ids:
        db.store_embedding(db.get_chunk(c), [1.0, 1.0])

    assert len(db.sample_embeddings(2)) == 2
    assert len(db.sample_embeddings(10)) == 3


def test_document_for_chunk(db, add_document):
    document, chunk_ids = add_document("a.txt", ["a"])

    assert db.get_document_for_chunk(chunk_ids[0]).id == document.id
    assert db.get_document_for_chunk(4242) is None


def test_index_state_roundtrip(db):
    assert db.get_index_state("idx") is None

    db.set_index_state("idx", "creating", "flat")
    db.set_index_state("idx", "ready", "flat", dimension=8, vector_count=3)

    state = db.get_index_state("idx")
    assert state["status"] == "ready"
    assert state["dimension"] == 8
    assert state["vector_count"] == 3

    db.delete_index_state("idx")
    assert db.get_index_state("idx") is None


def test_ingest_run_recording(db):
    assert db.get_latest_ingest_run() is None

    db.record_ingest_run(
        started_at="2026-01-01T00:00:00+00:00",
        strategy="paragraph",
        chunk_size=1000,
        chunk_overlap=200,
        documents_processed=2,
        chunks_created=7,
        embeddings_generated=7,
        index_status="ready",
        metadata={"documents_failed": 0},
    )

    run = db.get_latest_ingest_run()
    assert run["chunks_created"] == 7
    assert run["metadata"] == {"documents_failed": 0}


def test_closed_database_is_unavailable(tmp_path):
    database = Database(tmp_path / "x.sqlite", pool_size=1)

    with pytest.raises(StoreUnavailableError):
        database.count_documents()

    with database:
        assert database.count_documents() == 0

    with pytest.raises(StoreUnavailableError):
        database.count_documents()


def test_pool_exhaustion_raises(tmp_path):
    with Database(tmp_path / "x.sqlite", pool_size=1, pool_timeout=0.05) as database:
        with database.connection():
            with pytest.raises(StoreUnavailableError):
                with database.connection():
                    pass
