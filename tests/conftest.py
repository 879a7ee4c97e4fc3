"""Shared fixtures: ephemeral two-dimensional stores and crafted vectors.

With a query vector of [1, 0], NEAR, MID and FAR have cosine similarity
0.9, 0.8 and 0.5. NEAR and FAR are 0.83 apart, below the 0.85 conflict
threshold. UNRELATED sits at 0.4, under the default 0.65 retrieval floor.
"""

import uuid
from datetime import datetime
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from founder_memory.completion.ollama import OllamaCompletionClient
from founder_memory.embedding.ollama import OllamaClient
from founder_memory.memory.chunking import content_hash
from founder_memory.memory.types import ChunkMetadata, MemoryChunk, MemoryType
from founder_memory.storage.hybrid import HybridStore

QUERY = [1.0, 0.0]
NEAR = [0.9, 0.4358898943540674]
MID = [0.8, 0.6]
FAR = [0.5, 0.8660254037844386]
UNRELATED = [0.4, 0.916515138991168]


def unique_collection_name() -> str:
    """Generate a unique collection name for test isolation."""
    return f"test_{uuid.uuid4().hex[:8]}"


def make_chunk(
    project_id: str,
    content: str,
    embedding: list[float],
    memory_type: MemoryType = MemoryType.NOTE,
    founder_weight: float = 1.0,
    created_at: Optional[datetime] = None,
    chunk_id: Optional[str] = None,
) -> MemoryChunk:
    """Build a chunk ready for insertion."""
    return MemoryChunk(
        id=chunk_id or HybridStore.new_chunk_id(),
        project_id=project_id,
        content=content,
        content_hash=content_hash(content),
        memory_type=memory_type,
        embedding=embedding,
        founder_weight=founder_weight,
        metadata=ChunkMetadata(),
        created_at=created_at or datetime.now(),
    )


def fake_embedder(vectors: Optional[dict[str, list[float]]] = None, default=None) -> AsyncMock:
    """Embedding client mock returning a fixed vector per text."""
    vectors = vectors or {}
    client = AsyncMock(spec=OllamaClient)

    async def embed(text: str, is_query: bool = False) -> list[float]:
        for key, vector in vectors.items():
            if key in text:
                return vector
        return list(default or QUERY)

    client.embed.side_effect = embed
    return client


def fake_llm(response: str = "note") -> AsyncMock:
    """Completion client mock returning a fixed response."""
    client = AsyncMock(spec=OllamaCompletionClient)
    client.complete.return_value = response
    return client


@pytest_asyncio.fixture
async def store():
    """Ephemeral HybridStore with two-dimensional vectors."""
    hybrid = await HybridStore.create(
        ephemeral=True,
        collection_name=unique_collection_name(),
        dimension=2,
    )
    yield hybrid
    await hybrid.close()


@pytest.fixture
def project_id() -> str:
    return f"proj-{uuid.uuid4().hex[:8]}"


def scripted_llm(label: str = "metric", briefing: str = "Briefing: MRR is $60k.") -> AsyncMock:
    """Completion mock answering classification and compression prompts."""
    client = AsyncMock(spec=OllamaCompletionClient)

    async def complete(prompt: str, max_tokens: Optional[int] = None) -> str:
        return label if "Classify" in prompt else briefing

    client.complete.side_effect = complete
    return client
