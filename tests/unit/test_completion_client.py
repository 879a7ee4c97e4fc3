"""Unit tests for the Ollama completion client."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from founder_memory.completion.ollama import CompletionError, OllamaCompletionClient

GENERATE_URL = "http://localhost:11434/api/generate"


class TestComplete:
    """Tests for plain-text completion."""

    @pytest.mark.asyncio
    async def test_complete_returns_stripped_text(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=GENERATE_URL, json={"response": "  metric\n"})

        async with OllamaCompletionClient() as llm:
            result = await llm.complete("Classify this")

        assert result == "metric"
        payload = json.loads(httpx_mock.get_request().content)
        assert payload == {"model": "llama3.2", "prompt": "Classify this", "stream": False}

    @pytest.mark.asyncio
    async def test_max_tokens_sent_as_num_predict(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=GENERATE_URL, json={"response": "task"})

        async with OllamaCompletionClient(model="qwen2.5") as llm:
            await llm.complete("Classify this", max_tokens=10)

        payload = json.loads(httpx_mock.get_request().content)
        assert payload["model"] == "qwen2.5"
        assert payload["options"] == {"num_predict": 10}

    @pytest.mark.asyncio
    async def test_empty_response_raises(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=GENERATE_URL, json={"response": "   "})

        async with OllamaCompletionClient() as llm:
            with pytest.raises(CompletionError, match="Empty completion"):
                await llm.complete("Classify this")

    @pytest.mark.asyncio
    async def test_http_error_raises(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=GENERATE_URL, status_code=404, text="model not found")

        async with OllamaCompletionClient() as llm:
            with pytest.raises(CompletionError, match="404"):
                await llm.complete("Classify this")

    @pytest.mark.asyncio
    async def test_request_error_retried(self, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        httpx_mock.add_response(method="POST", url=GENERATE_URL, json={"response": "note"})

        with patch("founder_memory.completion.ollama.asyncio.sleep", new=AsyncMock()):
            async with OllamaCompletionClient() as llm:
                assert await llm.complete("Classify this") == "note"

    @pytest.mark.asyncio
    async def test_timeout_raises(self, httpx_mock):
        httpx_mock.add_exception(httpx.ReadTimeout("slow"))

        async with OllamaCompletionClient() as llm:
            with pytest.raises(CompletionError, match="timeout"):
                await llm.complete("Classify this")
