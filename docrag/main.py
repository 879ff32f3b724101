"""Quart application exposing chunking, ingestion and RAG query endpoints."""
import json
from contextlib import AsyncExitStack, aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from pydantic import ValidationError
from quart import Quart, Response, current_app, jsonify, request

from docrag import config
from docrag.context import ServiceContext, open_services
from docrag.errors import ConfigurationError, ProviderError
from docrag.log_config import configure_logging
from docrag.rag.chunker import TextChunker
from docrag.rag.loaders import DocumentInput, DocumentLoader, UnsupportedDocumentError
from docrag.rag.orchestrator import PreparedPrompt
from docrag.schemas import ChunkRequest, IngestRequest, QueryRequest

logger = structlog.get_logger()

SERVICES_KEY = "docrag"
GENERIC_ERROR = "An error occurred processing your request. Please try again."


def _services() -> ServiceContext:
    return current_app.extensions[SERVICES_KEY]


def _validation_details(error: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
        for err in error.errors()
    ]


def _sse(data: Any, event: Optional[str] = None) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data)
    lines = f"event: {event}\n" if event else ""
    return f"{lines}data: {payload}\n\n".encode("utf-8")


def _form_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _form_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


async def _event_stream(
    prepared: PreparedPrompt, fragments: AsyncIterator[str]
) -> AsyncIterator[bytes]:
    """Sources first, then one event per fragment, then the [DONE] sentinel.

    A failure mid-stream ends the stream with an error event and no sentinel.
    """
    yield _sse(
        {
            "sources": [s.to_dict() for s in prepared.sources],
            "retrieval_mode": prepared.retrieval_mode.value,
        },
        event="sources",
    )

    fragment_count = 0
    try:
        async with aclosing(fragments) as stream:
            async for fragment in stream:
                fragment_count += 1
                yield _sse({"content": fragment})
    except Exception as e:
        logger.error(
            "query_stream_failed",
            error=str(e),
            error_type=type(e).__name__,
            fragments_sent=fragment_count,
        )
        yield _sse({"error": GENERIC_ERROR}, event="error")
        return

    yield _sse("[DONE]")
    logger.info("query_stream_sent", fragments=fragment_count)


def create_app(services: Optional[ServiceContext] = None) -> Quart:
    """Build the application.

    Args:
        services: Pre-built services (tests inject these); when omitted the
            store and provider client are opened when the app starts serving
            and closed when it stops.
    """
    configure_logging()

    app = Quart(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES
    app.extensions[SERVICES_KEY] = services
    exit_stack = AsyncExitStack()

    @app.before_serving
    async def startup():
        if app.extensions.get(SERVICES_KEY) is None:
            services = await exit_stack.enter_async_context(open_services())
            app.extensions[SERVICES_KEY] = services
            try:
                await services.vector_index.ensure()
            except Exception as e:
                # Queries fall back to degraded retrieval until the next ingest
                logger.error("vector_index_startup_failed", error=str(e), error_type=type(e).__name__)

    @app.after_serving
    async def shutdown():
        await exit_stack.aclose()

    @app.route("/api/chunks", methods=["POST"])
    async def chunk_text():
        """Chunk text interactively with a chosen strategy.

        Expects JSON body:
        {
            "text": "text to chunk",
            "strategy": "fixed_size",  // or "method"
            "chunkSize": 200,
            "overlap": 50,
            "delimiter": "optional literal delimiter"
        }

        Returns JSON:
        {
            "chunks": [{"id": "chunk_0", "text": "...", "strategy": "...", "metadata": {...}}],
            "strategy": "fixed_size"
        }
        """
        try:
            data = await request.get_json(silent=True)
            if data is None:
                return jsonify({"error": "Request body must be JSON"}), 400

            req = ChunkRequest.model_validate(data)
            logger.info(
                "chunk_request_received",
                strategy=req.strategy,
                strategy_defaulted="strategy" not in req.model_fields_set,
                chunk_size=req.chunk_size,
                overlap=req.overlap,
                text_length=len(req.text),
            )
            chunker = TextChunker(
                strategy=req.strategy,
                chunk_size=req.chunk_size,
                chunk_overlap=req.overlap,
                delimiter=req.delimiter,
            )
            chunks = chunker.chunk_text(req.text)

            strategy = chunker.strategy.value
            return jsonify(
                {
                    "chunks": [
                        {
                            "id": f"chunk_{c.chunk_index}",
                            "text": c.content,
                            "strategy": strategy,
                            "metadata": {
                                "chunk_size": chunker.chunk_size,
                                "overlap": chunker.chunk_overlap,
                                "index": c.chunk_index,
                            },
                        }
                        for c in chunks
                    ],
                    "strategy": strategy,
                }
            )

        except ValidationError as e:
            return jsonify({"error": "Invalid request", "details": _validation_details(e)}), 400
        except ConfigurationError as e:
            return jsonify({"error": str(e)}), 400
        except Exception as e:
            logger.error("chunk_endpoint_error", error=str(e), error_type=type(e).__name__)
            return jsonify({"error": "Failed to process chunks"}), 500

    @app.route("/api/ingest", methods=["POST"])
    async def ingest():
        """Store, chunk, embed and index documents. Safe to re-run.

        Accepts either a JSON body:
        {
            "documents": [{"name": "doc.txt", "content": "...", "source": "...", "url": "..."}],
            "strategy": "paragraph",
            "chunkSize": 1000,
            "overlap": 200,
            "force": false
        }
        or a multipart upload of .txt/.md/.pdf files (field "files") with the
        same options as form fields.
        """
        services = _services()
        try:
            if (request.content_type or "").startswith("multipart/form-data"):
                documents, options = await _read_uploads()
            else:
                data = await request.get_json(silent=True)
                if data is None:
                    return jsonify({"error": "Request body must be JSON or multipart"}), 400
                req = IngestRequest.model_validate(data)
                documents = [
                    DocumentInput(
                        name=d.name,
                        content=d.content,
                        source=d.source,
                        type=d.type,
                        url=d.url,
                    )
                    for d in req.documents
                ]
                options = {
                    "strategy": req.strategy,
                    "chunk_size": req.chunk_size,
                    "overlap": req.overlap,
                    "force": req.force,
                }

            if not documents:
                return jsonify({"error": "No documents provided"}), 400

            chunker = TextChunker(
                strategy=options["strategy"],
                chunk_size=options["chunk_size"],
                chunk_overlap=options["overlap"],
            )

            logger.info(
                "ingest_request_received",
                documents=len(documents),
                strategy=chunker.strategy.value,
                force=options["force"],
            )

            report = await services.pipeline.ingest_and_index(
                documents=documents,
                force=options["force"],
                chunker=chunker,
            )
            return jsonify(report.to_dict())

        except ValidationError as e:
            return jsonify({"error": "Invalid request", "details": _validation_details(e)}), 400
        except (ConfigurationError, UnsupportedDocumentError) as e:
            return jsonify({"error": str(e)}), 400
        except Exception as e:
            logger.error("ingest_endpoint_error", error=str(e), error_type=type(e).__name__)
            return jsonify({"error": "Failed to ingest documents"}), 500

    async def _read_uploads():
        files = await request.files
        form = await request.form
        loader = DocumentLoader()

        documents = []
        for storage in files.getlist("files") or list(files.values()):
            if not storage.filename:
                continue
            documents.append(
                loader.load_bytes(storage.filename, storage.read(), source=form.get("source", "upload"))
            )

        try:
            options = {
                "strategy": form.get("strategy") or form.get("method"),
                "chunk_size": _form_int(form.get("chunkSize") or form.get("chunk_size")),
                "overlap": _form_int(form.get("overlap")),
                "force": _form_bool(form.get("force")),
            }
        except ValueError:
            raise ConfigurationError("chunkSize and overlap must be integers") from None
        return documents, options

    @app.route("/api/query", methods=["POST"])
    async def query():
        """Answer a question from the knowledge base.

        Expects JSON body:
        {
            "query": "question text",
            "conversationHistory": [{"role": "user", "content": "..."}],
            "stream": false
        }

        Returns JSON {"response", "sources", "retrieval_mode"}, or with
        "stream": true a text/event-stream: one "sources" event, one
        {"content": ...} event per fragment, then "[DONE]".
        """
        services = _services()
        try:
            data = await request.get_json(silent=True)
            if data is None:
                return jsonify({"error": "Request body must be JSON"}), 400
            req = QueryRequest.model_validate(data)
            history = [turn.model_dump() for turn in req.history]

            logger.info(
                "query_request_received",
                query_length=len(req.query),
                history_turns=len(history),
                stream=req.stream,
                query_preview=req.query[:100],
            )

            if req.stream:
                prepared, fragments = await services.orchestrator.stream_answer(req.query, history)
                response = Response(
                    _event_stream(prepared, fragments),
                    mimetype="text/event-stream",
                    headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
                )
                response.timeout = None
                return response

            answer = await services.orchestrator.answer(req.query, history)
            logger.info(
                "query_response_sent",
                response_length=len(answer.response),
                num_sources=len(answer.sources),
                retrieval_mode=answer.retrieval_mode.value,
            )
            return jsonify(answer.to_dict())

        except ValidationError as e:
            return jsonify({"error": "Invalid request", "details": _validation_details(e)}), 400
        except ProviderError as e:
            logger.error("query_provider_failed", operation=e.operation, error=str(e))
            return jsonify({"error": "The language model service is unavailable. Please try again."}), 502
        except Exception as e:
            logger.error("query_endpoint_error", error=str(e), error_type=type(e).__name__)
            return jsonify({"error": GENERIC_ERROR}), 500

    @app.route("/api/stats")
    async def stats():
        """Collection counts, vector index state and the latest ingest run."""
        services = _services()
        try:
            db = services.db
            return jsonify(
                {
                    "documents": db.count_documents(),
                    "chunks": db.count_chunks(),
                    "chunks_unprocessed": db.count_chunks(processed=False),
                    "embeddings": db.count_embeddings(),
                    "embedding_dimension": db.embedding_dimension(),
                    "vector_index": services.vector_index.get_stats(),
                    "last_ingest_run": db.get_latest_ingest_run(),
                }
            )
        except Exception as e:
            logger.error("stats_endpoint_error", error=str(e), error_type=type(e).__name__)
            return jsonify({"error": "Failed to get stats"}), 500

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - check if app can serve requests.

        Checks:
        - Document store is reachable
        - Provider service is reachable (when the client can list models)
        """
        services = _services()
        checks: Dict[str, Any] = {
            "status": "healthy",
            "store": False,
            "provider": False,
            "vector_index": None,
        }

        try:
            services.db.count_documents()
            checks["store"] = True
            checks["vector_index"] = services.vector_index.status.value

            list_models = getattr(services.provider, "list_models", None)
            if list_models is not None:
                await list_models()
            checks["provider"] = True

            return jsonify(checks), 200

        except Exception as e:
            logger.error("health_check_failed", error=str(e), error_type=type(e).__name__)
            checks["status"] = "unhealthy"
            checks["error"] = type(e).__name__
            return jsonify(checks), 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(413)
    async def too_large(error):
        return jsonify({"error": "Upload too large"}), 413

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


app = create_app()


if __name__ == "__main__":
    # For development - run with hypercorn in production: hypercorn docrag.main:app
    app.run(host="0.0.0.0", port=5000, debug=True)
