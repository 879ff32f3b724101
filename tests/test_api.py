"""Tests for the HTTP API."""
import io
import json

import pytest
from werkzeug.datastructures import FileStorage

from docrag.main import _event_stream, create_app


@pytest.fixture
def app(services):
    return create_app(services)


@pytest.fixture
def client(app):
    return app.test_client()


def parse_events(body: str):
    """Split an event-stream body into (event, data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        event, data = None, None
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = line[len("data: "):]
        events.append((event, data))
    return events


async def ingest_sample(client):
    response = await client.post(
        "/api/ingest",
        json={
            "documents": [
                {"name": "cats.txt", "content": "Cats purr when they are happy."},
                {"name": "dogs.txt", "content": "Dogs bark at the mail carrier.", "url": "https://example.com/dogs"},
            ]
        },
    )
    assert response.status_code == 200
    return await response.get_json()


async def test_health_live(client):
    response = await client.get("/health/live")

    assert response.status_code == 200
    assert await response.get_json() == {"status": "alive"}


async def test_health_ready(client):
    response = await client.get("/health/ready")
    data = await response.get_json()

    assert response.status_code == 200
    assert data["store"] is True
    assert data["provider"] is True
    assert data["vector_index"] == "absent"


async def test_chunks_endpoint_accepts_client_field_names(client):
    response = await client.post(
        "/api/chunks",
        json={"text": "x" * 450, "method": "fixed", "chunkSize": 200, "overlap": 50},
    )
    data = await response.get_json()

    assert response.status_code == 200
    assert data["strategy"] == "fixed_size"
    assert [len(c["text"]) for c in data["chunks"]] == [200, 200, 150]
    assert data["chunks"][1]["id"] == "chunk_1"
    assert data["chunks"][1]["metadata"] == {"chunk_size": 200, "overlap": 50, "index": 1}


async def test_chunks_endpoint_defaults(client):
    response = await client.post("/api/chunks", json={"text": "A. B. C.", "strategy": "sentence"})
    data = await response.get_json()

    assert [c["text"] for c in data["chunks"]] == ["A. B. C."]


@pytest.mark.parametrize(
    "payload",
    [
        {"text": "hello", "strategy": "mystery"},
        {"text": "hello", "strategy": "fixed_size", "chunkSize": 10, "overlap": 10},
        {"strategy": "fixed_size"},
        {"text": "hello", "chunkSize": -5},
    ],
)
async def test_chunks_endpoint_rejects_bad_input(client, payload):
    response = await client.post("/api/chunks", json=payload)

    assert response.status_code == 400
    assert "error" in await response.get_json()


async def test_ingest_is_safe_to_rerun(client, services):
    first = await ingest_sample(client)
    second = await ingest_sample(client)

    assert first["chunks_created"] == 2
    assert first["index_status"] == "ready"
    assert [d["skipped"] for d in first["documents"]] == [False, False]
    assert second["chunks_created"] == 0
    assert [d["skipped"] for d in second["documents"]] == [True, True]
    assert [d["chunk_count"] for d in second["documents"]] == [1, 1]
    assert services.db.count_chunks() == 2


async def test_ingest_multipart_upload(client, services):
    response = await client.post(
        "/api/ingest",
        files={"files": FileStorage(io.BytesIO(b"Uploaded text body."), filename="upload.txt")},
        form={"strategy": "none", "force": "false"},
    )
    data = await response.get_json()

    assert response.status_code == 200
    assert data["documents"][0]["name"] == "upload.txt"
    assert services.db.get_document_by_name("upload.txt").content == "Uploaded text body."


async def test_ingest_rejects_unsupported_upload(client):
    response = await client.post(
        "/api/ingest",
        files={"files": FileStorage(io.BytesIO(b"a,b"), filename="table.csv")},
    )

    assert response.status_code == 400


async def test_ingest_requires_documents(client):
    response = await client.post("/api/ingest", json={"documents": []})

    assert response.status_code == 400


async def test_query_json(client):
    await ingest_sample(client)

    response = await client.post(
        "/api/query",
        json={
            "query": "Why do cats purr?",
            "conversationHistory": [{"role": "user", "content": "Hi"}],
        },
    )
    data = await response.get_json()

    assert response.status_code == 200
    assert data["response"] == "Chunking splits documents."
    assert data["retrieval_mode"] == "ranked"
    assert {s["document_name"] for s in data["sources"]} == {"cats.txt", "dogs.txt"}
    assert all("content_preview" in s for s in data["sources"])


async def test_query_stream_format(client):
    await ingest_sample(client)

    response = await client.post("/api/query", json={"query": "Why do cats purr?", "stream": True})
    body = await response.get_data(as_text=True)

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"

    events = parse_events(body)
    assert events[0][0] == "sources"
    assert json.loads(events[0][1])["retrieval_mode"] == "ranked"
    assert [json.loads(data)["content"] for _, data in events[1:-1]] == [
        "Chunking ",
        "splits ",
        "documents.",
    ]
    assert events[-1] == (None, "[DONE]")


async def test_query_stream_error_has_no_done_sentinel(client, provider):
    await ingest_sample(client)
    provider.fail_stream_after = 1

    response = await client.post("/api/query", json={"query": "Why do cats purr?", "stream": True})
    body = await response.get_data(as_text=True)

    events = parse_events(body)
    assert events[-1][0] == "error"
    assert "[DONE]" not in body
    assert "generation stream broke" not in body


async def test_client_disconnect_closes_the_provider_stream(client, services, provider):
    await ingest_sample(client)
    prepared, fragments = await services.orchestrator.stream_answer("Why do cats purr?")
    events = _event_stream(prepared, fragments)

    sources = await events.__anext__()
    first = await events.__anext__()
    await events.aclose()

    assert sources.startswith(b"event: sources")
    assert json.loads(first.decode().removeprefix("data: ")) == {"content": "Chunking "}
    assert provider.stream_closed
    assert len(provider.completions) == 1


async def test_query_provider_failure_is_generic(client, provider):
    provider.fail_queries = True

    response = await client.post("/api/query", json={"query": "anything"})
    data = await response.get_json()

    assert response.status_code == 502
    assert "embedding service unavailable" not in data["error"]


@pytest.mark.parametrize(
    "payload",
    [
        {"query": "   "},
        {"query": "x" * 5000},
        {"query": "hi", "conversationHistory": [{"role": "robot", "content": "beep"}]},
        {},
    ],
)
async def test_query_validation(client, payload):
    response = await client.post("/api/query", json=payload)

    assert response.status_code == 400


async def test_stats(client):
    await ingest_sample(client)

    response = await client.get("/api/stats")
    data = await response.get_json()

    assert data["documents"] == 2
    assert data["chunks"] == 2
    assert data["embeddings"] == 2
    assert data["chunks_unprocessed"] == 0
    assert data["vector_index"]["status"] == "ready"
    assert data["last_ingest_run"]["chunks_created"] == 2


async def test_unknown_route(client):
    response = await client.get("/nope")

    assert response.status_code == 404
