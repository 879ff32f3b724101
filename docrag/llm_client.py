"""Embedding and generation provider clients.

Each client wraps one long-lived `httpx.AsyncClient`, acquired with `open()`
(or `async with`) at startup and released with `aclose()` at shutdown.
Transport failures surface as `ProviderError`, timeouts as
`ProviderTimeoutError`.
"""
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
import structlog

from docrag import config
from docrag.errors import ConfigurationError, ProviderError, ProviderTimeoutError

logger = structlog.get_logger()

Message = Dict[str, str]


class EmbeddingProvider(Protocol):
    """Turns texts into fixed-dimensionality vectors."""

    async def embed(self, texts: List[str]) -> List[Optional[List[float]]]:
        ...


class GenerationProvider(Protocol):
    """Produces chat completions, whole or as a stream of fragments."""

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        ...

    def stream(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        ...


class ProviderClient:
    """Shared HTTP plumbing for provider clients."""

    provider_name = "provider"

    def __init__(
        self,
        base_url: str,
        chat_model: str = None,
        embedding_model: str = None,
        timeout: float = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client (the HTTP connection pool opens in `open()`).

        Args:
            base_url: Provider API base URL
            chat_model: Generation model (defaults to config.CHAT_MODEL)
            embedding_model: Embedding model (defaults to config.EMBEDDING_MODEL)
            timeout: Per-request timeout in seconds (defaults to config.PROVIDER_TIMEOUT)
            headers: Extra headers sent with every request
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.chat_model = chat_model or config.CHAT_MODEL
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.PROVIDER_TIMEOUT
        self._headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def open(self) -> "ProviderClient":
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=self._headers,
                transport=self._transport,
            )
            logger.info(
                "provider_client_opened",
                provider=self.provider_name,
                base_url=self.base_url,
                chat_model=self.chat_model,
                embedding_model=self.embedding_model,
            )
        return self

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("provider_client_closed", provider=self.provider_name)

    async def __aenter__(self) -> "ProviderClient":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.provider_name} client is not open")
        return self._client

    def _translate_error(self, error: Exception, operation: str) -> ProviderError:
        if isinstance(error, httpx.TimeoutException):
            logger.error(
                "provider_timeout",
                provider=self.provider_name,
                operation=operation,
                timeout=self.timeout,
            )
            return ProviderTimeoutError(
                f"{self.provider_name} {operation} timed out after {self.timeout}s",
                operation=operation,
            )

        status_code = None
        if isinstance(error, httpx.HTTPStatusError):
            status_code = error.response.status_code
        logger.error(
            "provider_request_failed",
            provider=self.provider_name,
            operation=operation,
            status_code=status_code,
            error=str(error),
            error_type=type(error).__name__,
        )
        return ProviderError(
            f"{self.provider_name} {operation} failed: {error}", operation=operation
        )

    async def _post_json(self, path: str, payload: Dict[str, Any], operation: str) -> Dict[str, Any]:
        try:
            response = await self.client.post(path, json=payload)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise self._translate_error(e, operation) from e

    async def _get_json(self, path: str, operation: str) -> Dict[str, Any]:
        try:
            response = await self.client.get(path)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise self._translate_error(e, operation) from e

    async def _stream_lines(
        self, path: str, payload: Dict[str, Any], operation: str
    ) -> AsyncIterator[str]:
        """Yield non-empty response lines; closing the iterator closes the request."""
        try:
            async with self.client.stream("POST", path, json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line
        except httpx.HTTPError as e:
            raise self._translate_error(e, operation) from e

    @staticmethod
    def _build_messages(system_prompt: str, messages: List[Message]) -> List[Message]:
        return [{"role": "system", "content": system_prompt}] + list(messages)


class OllamaClient(ProviderClient):
    """Async client for the Ollama API."""

    provider_name = "ollama"

    def __init__(self, base_url: str = None, **kwargs):
        super().__init__(base_url or config.OLLAMA_BASE_URL, **kwargs)

    def _chat_payload(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float],
        max_tokens: Optional[int],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.chat_model,
            "messages": self._build_messages(system_prompt, messages),
            "stream": stream,
        }
        options = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if options:
            payload["options"] = options
        return payload

    async def embed(self, texts: List[str]) -> List[Optional[List[float]]]:
        """Embed a batch of texts in one request.

        Returns:
            One entry per returned embedding; callers align it with `texts`

        Raises:
            ProviderError: On transport failure or a response without embeddings
        """
        logger.debug("ollama_embedding_request", model=self.embedding_model, batch_size=len(texts))
        data = await self._post_json(
            "/api/embed",
            {"model": self.embedding_model, "input": texts},
            operation="embedding",
        )

        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise ProviderError("Ollama embedding response has no 'embeddings' list", "embedding")

        logger.debug("ollama_embedding_response", model=self.embedding_model, count=len(embeddings))
        return embeddings

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        logger.info("ollama_chat_request", model=self.chat_model, message_count=len(messages) + 1)
        data = await self._post_json(
            "/api/chat",
            self._chat_payload(system_prompt, messages, temperature, max_tokens, stream=False),
            operation="generation",
        )

        content = (data.get("message") or {}).get("content")
        if content is None:
            raise ProviderError("Ollama chat response has no message content", "generation")

        logger.info("ollama_chat_response", model=self.chat_model, response_length=len(content))
        return content

    async def stream(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Stream chat fragments from Ollama's newline-delimited JSON."""
        payload = self._chat_payload(system_prompt, messages, temperature, max_tokens, stream=True)
        logger.info("ollama_chat_stream_started", model=self.chat_model)

        async for line in self._stream_lines("/api/chat", payload, operation="generation"):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("ollama_stream_line_unparseable", line_preview=line[:100])
                continue

            if data.get("error"):
                raise ProviderError(f"Ollama stream error: {data['error']}", "generation")

            content = (data.get("message") or {}).get("content")
            if content:
                yield content
            if data.get("done"):
                break

    async def list_models(self) -> List[str]:
        data = await self._get_json("/api/tags", operation="list_models")
        return [m["name"] for m in data.get("models", [])]


class OpenAIClient(ProviderClient):
    """Async client for OpenAI-compatible APIs."""

    provider_name = "openai"

    def __init__(self, base_url: str = None, api_key: str = None, **kwargs):
        api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai provider")
        headers = {"Authorization": f"Bearer {api_key}"}
        super().__init__(base_url or config.OPENAI_BASE_URL, headers=headers, **kwargs)

    def _chat_payload(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float],
        max_tokens: Optional[int],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.chat_model,
            "messages": self._build_messages(system_prompt, messages),
            "stream": stream,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    async def embed(self, texts: List[str]) -> List[Optional[List[float]]]:
        """Embed a batch of texts, placing each result at its reported index."""
        data = await self._post_json(
            "/embeddings",
            {"model": self.embedding_model, "input": texts},
            operation="embedding",
        )

        items = data.get("data")
        if not isinstance(items, list):
            raise ProviderError("OpenAI embedding response has no 'data' list", "embedding")

        embeddings: List[Optional[List[float]]] = [None] * len(texts)
        for position, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            index = item.get("index", position)
            if isinstance(index, int) and 0 <= index < len(texts):
                embeddings[index] = item.get("embedding")
        return embeddings

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        logger.info("openai_chat_request", model=self.chat_model, message_count=len(messages) + 1)
        data = await self._post_json(
            "/chat/completions",
            self._chat_payload(system_prompt, messages, temperature, max_tokens, stream=False),
            operation="generation",
        )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError("OpenAI chat response has no message content", "generation") from None

        logger.info("openai_chat_response", model=self.chat_model, response_length=len(content or ""))
        return content or ""

    async def stream(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Stream chat fragments from server-sent events."""
        payload = self._chat_payload(system_prompt, messages, temperature, max_tokens, stream=True)
        logger.info("openai_chat_stream_started", model=self.chat_model)

        async for line in self._stream_lines("/chat/completions", payload, operation="generation"):
            if not line.startswith("data:"):
                continue
            body = line[len("data:"):].strip()
            if body == "[DONE]":
                break

            try:
                data = json.loads(body)
                content = data["choices"][0].get("delta", {}).get("content")
            except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
                logger.warning("openai_stream_event_unparseable", line_preview=line[:100])
                continue

            if content:
                yield content

    async def list_models(self) -> List[str]:
        data = await self._get_json("/models", operation="list_models")
        return [m["id"] for m in data.get("data", [])]


def create_provider_client(provider: str = None, **kwargs) -> ProviderClient:
    """Build the provider client named by `provider` (default config.LLM_PROVIDER).

    Raises:
        ConfigurationError: If the provider name is unknown
    """
    provider = (provider or config.LLM_PROVIDER).strip().lower()
    if provider == "ollama":
        return OllamaClient(**kwargs)
    if provider == "openai":
        return OpenAIClient(**kwargs)
    raise ConfigurationError(f"Unknown LLM provider '{provider}'. Expected 'ollama' or 'openai'")
