"""Ollama embedding adapter with async httpx and dimension enforcement.

Maps text to fixed-dimension vectors through the Ollama /api/embed endpoint:
- Query prefix support for mxbai-embed-large model
- Exponential backoff retry on connection errors
- Every returned vector is checked against the configured dimension
"""

import asyncio
import logging
from typing import Any, List, Optional

import httpx

logger = logging.getLogger(__name__)

# Query prefix for mxbai-embed-large model
# Stored chunks do NOT get this prefix, only retrieval queries
EMBED_PREFIX = "Represent this sentence for searching relevant passages: "


class EmbeddingError(Exception):
    """Raised when an embedding cannot be produced or has the wrong shape."""

    pass


class OllamaClient:
    """Async HTTP client for the Ollama embeddings API.

    Args:
        host: Ollama server host URL (default: "http://localhost:11434")
        model: Embedding model name (default: "mxbai-embed-large")
        timeout: Request timeout in seconds (default: 30)
        dimension: Expected vector length; None disables the check
        max_retries: Attempts per request on connection errors (default: 3)
        retry_delay: Seconds before the first retry, doubled each time (default: 1.0)

    Example:
        >>> async with OllamaClient(dimension=1024) as client:
        ...     query_emb = await client.embed("What did we decide on pricing?", is_query=True)
        ...     chunk_emb = await client.embed("We moved to usage-based pricing.")
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "mxbai-embed-large",
        timeout: float = 30.0,
        dimension: Optional[int] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.dimension = dimension
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings) -> "OllamaClient":
        """Create a client for the embedding model configured in MemorySettings."""
        return cls(
            host=settings.ollama_host,
            model=settings.embedding_model,
            timeout=settings.ollama_timeout,
            dimension=settings.embedding_dimension,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _post(self, payload: dict) -> dict:
        """POST to /api/embed, retrying transport errors with exponential backoff.

        Connection and request errors wait retry_delay, then twice as long on
        each further attempt. Timeouts and HTTP status errors fail immediately.

        Raises:
            EmbeddingError: If the request fails after max_retries attempts
        """
        client = await self._get_client()

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.post(f"{self.host}/api/embed", json=payload)
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result

            except ValueError as e:
                raise EmbeddingError(f"Invalid JSON from Ollama API: {e}") from e

            except httpx.TimeoutException as e:
                raise EmbeddingError(
                    f"Embedding request timeout after {self.timeout}s (model {self.model})"
                ) from e

            except httpx.HTTPStatusError as e:
                raise EmbeddingError(
                    f"Ollama API error: {e.response.status_code} - {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                if attempt == self.max_retries:
                    raise EmbeddingError(
                        f"Ollama unreachable at {self.host} after {attempt} attempts: {e}"
                    ) from e
                delay = self.retry_delay * 2 ** (attempt - 1)
                logger.warning(
                    f"Embedding request failed (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)

        raise EmbeddingError(f"No request attempted (max_retries={self.max_retries})")

    def _check_dimension(self, vector: List[float]) -> List[float]:
        if self.dimension is not None and len(vector) != self.dimension:
            raise EmbeddingError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )
        return vector

    def _prefixed(self, text: str, is_query: bool) -> str:
        if is_query and "mxbai" in self.model.lower():
            return f"{EMBED_PREFIX}{text}"
        return text

    async def embed(self, text: str, is_query: bool = False) -> List[float]:
        """Generate the embedding for a single text.

        Args:
            text: Input text to embed
            is_query: If True, apply the mxbai query prefix

        Returns:
            Embedding vector of the configured dimension

        Raises:
            EmbeddingError: If the API fails or the vector has the wrong dimension
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        payload = {
            "model": self.model,
            "input": self._prefixed(text, is_query),
        }

        data = await self._post(payload)
        embeddings = data.get("embeddings")

        if not embeddings:
            raise EmbeddingError("No embedding returned from Ollama API")

        embedding: list[float] = embeddings[0]
        return self._check_dimension(embedding)
