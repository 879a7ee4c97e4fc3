"""Ollama completion client used for classification and context compression."""

import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    """Raised when the completion service fails or returns unusable output."""

    pass


class OllamaCompletionClient:
    """Async client for the Ollama /api/generate endpoint.

    Args:
        host: Ollama server host URL
        model: Generation model name
        timeout: Request timeout in seconds

    Example:
        >>> async with OllamaCompletionClient(model="llama3.2") as llm:
        ...     label = await llm.complete("Classify: we raised a seed round")
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout: float = 30.0,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaCompletionClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _generate(
        self,
        payload: dict,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> dict:
        client = await self._get_client()
        last_error: Exception | None = None

        for attempt in range(max_retries):
            try:
                response = await client.post(f"{self.host}/api/generate", json=payload)
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result

            except ValueError as e:
                raise CompletionError(f"Invalid JSON from Ollama API: {e}") from e

            except httpx.TimeoutException as e:
                raise CompletionError(
                    f"Completion request timeout after {self.timeout}s (model {self.model})"
                ) from e

            except httpx.HTTPStatusError as e:
                raise CompletionError(
                    f"Ollama API error: {e.response.status_code} - {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                last_error = e
                if attempt < max_retries - 1:
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        f"Completion request error (attempt {attempt + 1}/{max_retries}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    raise CompletionError(
                        f"Ollama completion failed after {max_retries} attempts: {e}"
                    ) from e

        raise CompletionError(f"Unexpected error: {last_error}")

    async def complete(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        """Generate a plain-text completion.

        Args:
            prompt: Prompt text
            max_tokens: Optional cap on generated tokens

        Returns:
            The generated text, stripped

        Raises:
            CompletionError: On transport failure or an empty response
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
        }
        if max_tokens is not None:
            payload["options"] = {"num_predict": max_tokens}

        data = await self._generate(payload)
        text = str(data.get("response", "")).strip()
        if not text:
            raise CompletionError("Empty completion returned from Ollama API")
        return text

