"""Provider interfaces and the Ollama client that implements them."""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx
import structlog

from metarag import config
from metarag.errors import ExternalServiceError, IntegrationError

logger = structlog.get_logger()


class EmbeddingProvider(ABC):
    """Maps texts to fixed-length vectors, one per input, in order."""

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...


class TextCompletionProvider(ABC):
    """Generates a completion for a single prompt."""

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        ...


class OllamaClient(EmbeddingProvider, TextCompletionProvider):
    """Async client for interacting with the Ollama API.

    Entering the client as an async context manager keeps one pooled
    ``httpx.AsyncClient`` open until exit; outside of it every call uses a
    short-lived client.
    """

    provider_name = "ollama"

    def __init__(
        self,
        base_url: str = None,
        chat_model: str = None,
        embedding_model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            chat_model: Model used for completions (defaults to config.CHAT_MODEL)
            embedding_model: Model used for embeddings (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.chat_model = chat_model or config.CHAT_MODEL
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.LLM_TIMEOUT
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def __aenter__(self) -> "OllamaClient":
        if self._client is None:
            self._client = self._new_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Release the pooled HTTP client, if any."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: Dict) -> Dict:
        """POST a JSON payload and return the decoded body.

        Raises:
            ExternalServiceError: On connection, timeout or HTTP status errors
            IntegrationError: If the body is not a JSON object
        """
        try:
            if self._client is not None:
                response = await self._client.post(path, json=payload)
            else:
                async with self._new_client() as client:
                    response = await client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "ollama_http_error",
                path=path,
                status_code=e.response.status_code,
            )
            raise ExternalServiceError(
                f"Ollama returned HTTP {e.response.status_code} for {path}",
                provider=self.provider_name,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("ollama_connection_error", path=path, error=str(e), base_url=self.base_url)
            raise ExternalServiceError(
                f"Ollama request to {path} failed: {e}",
                provider=self.provider_name,
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise IntegrationError(f"Ollama returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise IntegrationError(f"Ollama returned a non-object body for {path}")
        return data

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> Dict:
        """Send chat completion request to Ollama.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to the client's chat model)
            temperature: Sampling temperature (0.0-2.0)

        Returns:
            Response dict with 'message' containing 'content'
        """
        model = model or self.chat_model

        payload = {
            "model": model,
            "messages": messages,
            "stream": False,
        }

        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        logger.info("ollama_chat_request", model=model, message_count=len(messages))

        data = await self._post("/api/chat", payload)

        logger.info(
            "ollama_chat_response",
            model=model,
            response_length=len(data.get("message", {}).get("content", "")),
        )

        return data

    async def complete(self, prompt: str) -> str:
        """Complete a single prompt sent as one user message."""
        data = await self.chat([{"role": "user", "content": prompt}])
        content = data.get("message", {}).get("content")
        if not isinstance(content, str):
            raise IntegrationError("Ollama chat response is missing message content", step="complete")
        return content

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts in a single request.

        Returns:
            One embedding per input text, in input order
        """
        if not texts:
            return []

        logger.debug("ollama_embedding_request", model=self.embedding_model, batch_size=len(texts))

        data = await self._post(
            "/api/embed",
            {"model": self.embedding_model, "input": list(texts)},
        )
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise IntegrationError("Ollama embed response is missing 'embeddings'", step="embed")

        logger.debug(
            "ollama_embedding_response",
            model=self.embedding_model,
            count=len(embeddings),
            dimension=len(embeddings[0]) if embeddings else 0,
        )

        return embeddings

    async def list_models(self) -> List[str]:
        """List all available Ollama models.

        Raises:
            ExternalServiceError: On API errors
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=5.0, transport=self._transport
            ) as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise ExternalServiceError(
                f"Failed to list Ollama models: {e}", provider=self.provider_name
            ) from e
