"""Embedding layer for founder_memory."""

from founder_memory.embedding.ollama import EMBED_PREFIX, EmbeddingError, OllamaClient

__all__ = ["OllamaClient", "EmbeddingError", "EMBED_PREFIX"]
