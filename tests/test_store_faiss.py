"""Tests for the named FAISS vector index and its lifecycle."""
import asyncio

import pytest

from docrag.errors import ConfigurationError, DataIntegrityError, IndexUnavailableError
from docrag.rag.store_faiss import FAISSVectorIndex, IndexStatus


def store_vectors(db, add_document, name, vectors):
    _, chunk_ids = add_document(name, [f"{name} chunk {i}" for i in range(len(vectors))])
    return [db.store_embedding(db.get_chunk(c), v) for c, v in zip(chunk_ids, vectors)]


@pytest.fixture
def index(db, tmp_path):
    return FAISSVectorIndex(db, name="test_index", index_dir=tmp_path / "indexes")


async def test_empty_collection_leaves_index_absent(index):
    assert await index.ensure() is IndexStatus.ABSENT
    assert index.status is IndexStatus.ABSENT
    assert not index.index_path.exists()


async def test_ensure_builds_ready_index(db, add_document, index):
    ids = store_vectors(db, add_document, "a.txt", [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])

    assert await index.ensure() is IndexStatus.READY

    state = db.get_index_state("test_index")
    assert state["status"] == "ready"
    assert state["dimension"] == 3
    assert state["vector_count"] == 2
    assert index.index_path.exists()

    found, scores = await index.search([0.9, 0.1, 0.0], top_k=2)
    assert found == [ids[0], ids[1]]
    assert scores[0] > scores[1]


async def test_ensure_is_idempotent(db, add_document, index):
    store_vectors(db, add_document, "a.txt", [[1.0, 0.0], [0.0, 1.0]])
    await index.ensure()
    first_update = db.get_index_state("test_index")["updated_at"]

    assert await index.ensure() is IndexStatus.READY
    assert db.get_index_state("test_index")["updated_at"] == first_update


async def test_ready_index_loads_from_disk(db, add_document, tmp_path, index):
    ids = store_vectors(db, add_document, "a.txt", [[1.0, 0.0], [0.0, 1.0]])
    await index.ensure()

    reopened = FAISSVectorIndex(db, name="test_index", index_dir=tmp_path / "indexes")
    found, _ = await reopened.search([0.0, 1.0], top_k=1)

    assert found == [ids[1]]


async def test_stale_creating_state_is_rebuilt(db, add_document, index):
    store_vectors(db, add_document, "a.txt", [[1.0, 0.0]])
    db.set_index_state("test_index", IndexStatus.CREATING.value, "flat")

    assert await index.ensure() is IndexStatus.READY
    assert index.status is IndexStatus.READY


async def test_failed_build_returns_to_absent(db, add_document, index, monkeypatch):
    store_vectors(db, add_document, "a.txt", [[1.0, 0.0]])

    def broken_save(built):
        raise RuntimeError("disk full")

    monkeypatch.setattr(index, "_save", broken_save)

    with pytest.raises(RuntimeError):
        await index.ensure()

    assert index.status is IndexStatus.ABSENT
    assert db.get_index_state("test_index") is None
    assert index.index is None


async def test_search_on_absent_index_raises(index):
    with pytest.raises(IndexUnavailableError):
        await index.search([1.0, 0.0], top_k=3)


async def test_search_with_wrong_dimension(db, add_document, index):
    store_vectors(db, add_document, "a.txt", [[1.0, 0.0, 0.0]])
    await index.ensure()

    with pytest.raises(DataIntegrityError):
        await index.search([1.0, 0.0], top_k=1)


async def test_add_extends_ready_index(db, add_document, index):
    store_vectors(db, add_document, "a.txt", [[1.0, 0.0]])
    await index.ensure()

    new_ids = store_vectors(db, add_document, "b.txt", [[0.0, 1.0], [0.7, 0.7]])
    added = await index.add(new_ids)

    assert added == 2
    assert db.get_index_state("test_index")["vector_count"] == 3
    found, _ = await index.search([0.0, 1.0], top_k=1)
    assert found == [new_ids[0]]


async def test_add_swaps_in_an_extended_copy(db, add_document, index):
    store_vectors(db, add_document, "a.txt", [[1.0, 0.0]])
    await index.ensure()
    searched = index.index

    await index.add(store_vectors(db, add_document, "b.txt", [[0.0, 1.0], [0.7, 0.7]]))

    assert index.index is not searched
    assert searched.ntotal == 1
    assert index.index.ntotal == 3


async def test_search_keeps_its_index_through_a_rebuild(db, add_document, index, monkeypatch):
    ids = store_vectors(db, add_document, "a.txt", [[1.0, 0.0], [0.0, 1.0]])
    await index.ensure()
    document = db.get_document_by_name("a.txt")
    to_thread = asyncio.to_thread

    async def rebuild_while_searching(func, *args):
        db.insert_chunks(document.id, [("replacement", {})], force=True)
        assert await index.rebuild() is IndexStatus.ABSENT
        return await to_thread(func, *args)

    monkeypatch.setattr(asyncio, "to_thread", rebuild_while_searching)

    found, _ = await index.search([1.0, 0.0], top_k=1)

    assert found == [ids[0]]
    assert index.index is None


async def test_add_is_noop_when_not_ready(db, add_document, index):
    ids = store_vectors(db, add_document, "a.txt", [[1.0, 0.0]])

    assert await index.add(ids) == 0
    assert index.status is IndexStatus.ABSENT


async def test_rebuild_drops_stale_vectors(db, add_document, index):
    document_ids = store_vectors(db, add_document, "a.txt", [[1.0, 0.0], [0.0, 1.0]])
    await index.ensure()

    document = db.get_document_by_name("a.txt")
    db.insert_chunks(document.id, [("replacement", {})], force=True)
    chunk = db.list_chunks(document.id)[0]
    new_id = db.store_embedding(chunk, [0.5, 0.5])

    assert await index.rebuild() is IndexStatus.READY

    found, _ = await index.search([1.0, 0.0], top_k=5)
    assert found == [new_id]
    assert not set(found) & set(document_ids)


async def test_hnsw_index_type(db, add_document, tmp_path):
    index = FAISSVectorIndex(db, name="hnsw_index", index_dir=tmp_path, index_type="hnsw")
    ids = store_vectors(db, add_document, "a.txt", [[1.0, 0.0], [0.0, 1.0]])

    await index.ensure()
    found, _ = await index.search([1.0, 0.1], top_k=1)

    assert found == [ids[0]]


def test_unknown_index_type(db, tmp_path):
    with pytest.raises(ConfigurationError):
        FAISSVectorIndex(db, index_dir=tmp_path, index_type="ivf")


async def test_stats(db, add_document, index):
    assert index.get_stats()["status"] == "absent"

    store_vectors(db, add_document, "a.txt", [[1.0, 0.0]])
    await index.ensure()

    stats = index.get_stats()
    assert stats["status"] == "ready"
    assert stats["vector_count"] == 1
    assert stats["index_exists_on_disk"]
