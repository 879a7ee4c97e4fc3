"""Completion layer for founder_memory."""

from founder_memory.completion.ollama import CompletionError, OllamaCompletionClient

__all__ = ["OllamaCompletionClient", "CompletionError"]
