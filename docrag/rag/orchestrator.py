"""Answer queries by retrieving chunks and conditioning a generation provider on them."""
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import structlog

from docrag import config
from docrag.db import Database, Document
from docrag.errors import NotFoundError
from docrag.llm_client import GenerationProvider, Message
from docrag.rag.embedder import EmbeddingGenerator
from docrag.rag.retriever import RetrievalMode, RetrievalResult, Retriever

logger = structlog.get_logger()

UNKNOWN_DOCUMENT = "Unknown"
PREVIEW_CHARS = 200
CONTEXT_SEPARATOR = "\n\n"

SYSTEM_PROMPT_TEMPLATE = """You are a helpful assistant that answers questions using the documents in the knowledge base.
Answer the user's question based on the following context. Answer directly and completely.
If the context doesn't contain relevant information, say you don't know but don't apologize.

CONTEXT:
{context}"""


@dataclass
class Source:
    """A retrieved chunk with its provenance, for citation display."""

    chunk_id: int
    document_id: Optional[int]
    document_name: str
    url: Optional[str]
    chunk_index: Optional[int]
    score: Optional[float]
    text: str

    def to_dict(self) -> Dict[str, Any]:
        preview = self.text[:PREVIEW_CHARS]
        if len(self.text) > PREVIEW_CHARS:
            preview += "..."
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "document_name": self.document_name,
            "url": self.url,
            "chunk_index": self.chunk_index,
            "score": round(self.score, 4) if self.score is not None else None,
            "content_preview": preview,
        }


@dataclass
class PreparedPrompt:
    """Everything needed to call the generation provider for one query."""

    system_prompt: str
    messages: List[Message]
    sources: List[Source]
    retrieval_mode: RetrievalMode
    context: str = ""


@dataclass
class RAGAnswer:
    response: str
    sources: List[Source] = field(default_factory=list)
    retrieval_mode: RetrievalMode = RetrievalMode.RANKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response,
            "sources": [s.to_dict() for s in self.sources],
            "retrieval_mode": self.retrieval_mode.value,
        }


class RAGOrchestrator:
    """Embeds a query, retrieves context, and asks the generation provider."""

    def __init__(
        self,
        db: Database,
        embedder: EmbeddingGenerator,
        retriever: Retriever,
        generator: GenerationProvider,
        top_k: int = None,
        max_context_chars: int = None,
        temperature: float = None,
        max_tokens: int = None,
        system_prompt_template: str = SYSTEM_PROMPT_TEMPLATE,
    ):
        self.db = db
        self.embedder = embedder
        self.retriever = retriever
        self.generator = generator
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS
        self.temperature = config.GENERATION_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.GENERATION_MAX_TOKENS
        self.system_prompt_template = system_prompt_template

    def document_for(self, chunk_id: int) -> Document:
        """Resolve a chunk to its owning document.

        Raises:
            NotFoundError: If the chunk or its document no longer exists
        """
        document = self.db.get_document_for_chunk(chunk_id)
        if document is None:
            raise NotFoundError(f"No document found for chunk {chunk_id}")
        return document

    def resolve_sources(self, result: RetrievalResult) -> List[Source]:
        """Attach document provenance to each hit; missing documents become "Unknown"."""
        sources = []
        for hit in result.hits:
            try:
                document = self.document_for(hit.chunk_id)
            except NotFoundError:
                logger.warning("chunk_document_not_found", chunk_id=hit.chunk_id)
                document = None

            sources.append(
                Source(
                    chunk_id=hit.chunk_id,
                    document_id=document.id if document else None,
                    document_name=document.name if document else UNKNOWN_DOCUMENT,
                    url=document.url if document else None,
                    chunk_index=hit.metadata.get("chunk_index"),
                    score=hit.score,
                    text=hit.text,
                )
            )
        return sources

    def build_context(self, sources: Sequence[Source]) -> str:
        """Concatenate chunk texts in ranked order, bounded by max_context_chars."""
        parts: List[str] = []
        total = 0

        for source in sources:
            text = source.text.strip()
            if not text:
                continue
            added = len(text) + (len(CONTEXT_SEPARATOR) if parts else 0)
            if total + added > self.max_context_chars:
                remaining = self.max_context_chars - total - (len(CONTEXT_SEPARATOR) if parts else 0)
                if remaining > PREVIEW_CHARS:
                    parts.append(text[:remaining])
                break
            parts.append(text)
            total += added

        return CONTEXT_SEPARATOR.join(parts)

    async def prepare(self, query: str, history: Sequence[Message] = ()) -> PreparedPrompt:
        """Run steps 1-4: embed, retrieve, resolve provenance, assemble the prompt.

        Raises:
            ProviderError: If the query cannot be embedded
        """
        query_vector = await self.embedder.embed_query(query)
        result = await self.retriever.search(query_vector, self.top_k)
        if result.degraded:
            logger.warning("query_using_degraded_retrieval", results=len(result))

        sources = self.resolve_sources(result)
        context = self.build_context(sources)
        system_prompt = self.system_prompt_template.format(
            context=context or "No context provided"
        )

        messages: List[Message] = [
            {"role": turn["role"], "content": turn["content"]} for turn in history
        ]
        messages.append({"role": "user", "content": query})

        logger.info(
            "rag_prompt_prepared",
            query_length=len(query),
            history_turns=len(history),
            num_sources=len(sources),
            context_length=len(context),
            retrieval_mode=result.mode.value,
        )

        return PreparedPrompt(
            system_prompt=system_prompt,
            messages=messages,
            sources=sources,
            retrieval_mode=result.mode,
            context=context,
        )

    async def answer(self, query: str, history: Sequence[Message] = ()) -> RAGAnswer:
        """Answer a query with a single completion."""
        prepared = await self.prepare(query, history)
        response = await self.generator.complete(
            prepared.system_prompt,
            prepared.messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        logger.info("rag_answer_generated", response_length=len(response))
        return RAGAnswer(
            response=response,
            sources=prepared.sources,
            retrieval_mode=prepared.retrieval_mode,
        )

    async def stream_answer(
        self, query: str, history: Sequence[Message] = ()
    ) -> Tuple[PreparedPrompt, AsyncIterator[str]]:
        """Prepare the prompt and return a lazy stream of generated fragments.

        The stream yields each fragment as soon as the provider emits it.
        Closing it (for example on client disconnect) closes the provider request.
        """
        prepared = await self.prepare(query, history)
        return prepared, self._fragments(prepared)

    async def _fragments(self, prepared: PreparedPrompt) -> AsyncIterator[str]:
        stream = self.generator.stream(
            prepared.system_prompt,
            prepared.messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        fragment_count = 0
        async with aclosing(stream) as fragments:
            async for fragment in fragments:
                fragment_count += 1
                yield fragment

        logger.info("rag_stream_completed", fragments=fragment_count)
