"""Memory data types and chunk-level helpers."""

from founder_memory.memory.chunking import chunk, content_hash
from founder_memory.memory.types import (
    ChunkMetadata,
    ChunkOutcome,
    IngestOptions,
    IngestResult,
    MemoryChunk,
    MemoryType,
    RetrievalResult,
    SearchResult,
    UpdateOutcome,
    UpdateResult,
    validate_project_id,
)

__all__ = [
    "chunk",
    "content_hash",
    "ChunkMetadata",
    "ChunkOutcome",
    "IngestOptions",
    "IngestResult",
    "MemoryChunk",
    "MemoryType",
    "RetrievalResult",
    "SearchResult",
    "UpdateOutcome",
    "UpdateResult",
    "validate_project_id",
]
