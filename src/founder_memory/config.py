"""Configuration settings for the founder-memory engine.

This module provides Pydantic Settings for configuration management with:
- Environment variable support (FOUNDER_MEMORY_ prefix)
- CLI argument override support
- Retrieval, ingestion and rate-limit tuning in one place
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MemorySettings(BaseSettings):
    """Configuration settings for the memory engine and its MCP server.

    Settings are loaded from environment variables with the FOUNDER_MEMORY_
    prefix. CLI arguments can override these settings when provided.

    Attributes:
        sqlite_path: Path to SQLite database (default: ~/.founder_memory/memory.db)
        chroma_path: Path to ChromaDB storage (default: ~/.founder_memory/chroma_db)
        collection_name: ChromaDB collection name (default: memory_chunks)
        ollama_host: Ollama server host URL (default: http://localhost:11434)
        embedding_model: Embedding model name (default: mxbai-embed-large)
        completion_model: Completion model used for classification and
            compression (default: llama3.2)
        min_similarity: Vector similarity floor for retrieval (default: 0.65)
        chunk_size: Chunk window in characters (default: 800)
        chunk_overlap: Characters shared by adjacent chunks (default: 80)

    Example:
        >>> settings = MemorySettings()
        >>> settings.min_similarity
        0.65

        >>> # Override via environment
        >>> # FOUNDER_MEMORY_MIN_SIMILARITY=0.7
        >>> settings = MemorySettings()
        >>> settings.min_similarity
        0.7
    """

    model_config = SettingsConfigDict(
        env_prefix="FOUNDER_MEMORY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage paths
    sqlite_path: Optional[Path] = Field(
        default=None,
        description="Path to SQLite database (default: ~/.founder_memory/memory.db)",
    )
    chroma_path: Optional[Path] = Field(
        default=None,
        description="Path to ChromaDB storage (default: ~/.founder_memory/chroma_db)",
    )
    collection_name: str = Field(
        default="memory_chunks",
        description="ChromaDB collection name",
    )

    # Ollama configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama server host URL",
    )
    embedding_model: str = Field(
        default="mxbai-embed-large",
        description="Embedding model name",
    )
    completion_model: str = Field(
        default="llama3.2",
        description="Completion model for classification and compression",
    )
    ollama_timeout: int = Field(
        default=30,
        description="Ollama request timeout in seconds",
    )
    embedding_dimension: int = Field(
        default=1024,
        gt=0,
        description="Dimension every stored and query vector must have",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # Retrieval
    min_similarity: float = Field(
        default=0.65,
        ge=0.0,
        le=1.0,
        description="Minimum vector similarity for a chunk to be retrieved",
    )
    default_limit: int = Field(
        default=8,
        ge=1,
        description="Default number of chunks returned by retrieval",
    )
    max_limit: int = Field(
        default=20,
        ge=1,
        description="Upper bound on the retrieval limit",
    )
    vector_weight: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Weight of vector similarity in the hybrid score",
    )
    keyword_weight: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Weight of keyword (BM25) relevance in the hybrid score",
    )
    age_decay_days: float = Field(
        default=90.0,
        gt=0.0,
        description="Time constant of the exponential age decay, in days",
    )
    enable_compression: bool = Field(
        default=True,
        description="Compress retrieved chunks into one context block",
    )

    # Ingestion
    chunk_size: int = Field(
        default=800,
        ge=1,
        description="Chunk window size in characters",
    )
    chunk_overlap: int = Field(
        default=80,
        ge=0,
        description="Characters shared between adjacent chunks",
    )
    batch_size: int = Field(
        default=5,
        ge=1,
        description="Chunks processed concurrently per ingestion batch",
    )
    enable_deduplication: bool = Field(
        default=True,
        description="Skip chunks whose content already exists in the project",
    )
    enable_sanitization: bool = Field(
        default=True,
        description="Redact prompt-injection patterns before storage and search",
    )

    # Updates
    conflict_similarity_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Similarity above which a new chunk conflicts with an existing one",
    )
    founder_weight: float = Field(
        default=1.5,
        gt=0.0,
        description="Ranking weight for founder-sourced memories",
    )
    agent_weight: float = Field(
        default=1.0,
        gt=0.0,
        description="Ranking weight for agent-sourced memories",
    )
    max_chain_depth: int = Field(
        default=10,
        ge=1,
        description="Supersession chain depth reported as unhealthy",
    )

    # Rate limits
    embeddings_per_minute: int = Field(
        default=100,
        ge=1,
        description="Embedding calls allowed per project per minute",
    )
    retrievals_per_minute: int = Field(
        default=200,
        ge=1,
        description="Retrievals allowed per project per minute",
    )
    completions_per_minute: int = Field(
        default=100,
        ge=1,
        description="Completion calls allowed per project per minute",
    )
    updates_per_hour: int = Field(
        default=100,
        ge=1,
        description="Memory updates allowed per project per hour",
    )

    @model_validator(mode="after")
    def _check_chunk_window(self) -> "MemorySettings":
        if self.chunk_size <= self.chunk_overlap:
            raise ValueError(
                f"chunk_size ({self.chunk_size}) must be greater than "
                f"chunk_overlap ({self.chunk_overlap})"
            )
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit cannot exceed max_limit")
        return self

    def get_sqlite_path(self) -> Optional[Path]:
        """Get the SQLite path, resolving to default if not set."""
        if self.sqlite_path:
            return self.sqlite_path.expanduser().resolve()
        return None

    def get_chroma_path(self) -> Optional[Path]:
        """Get the ChromaDB path, resolving to default if not set."""
        if self.chroma_path:
            return self.chroma_path.expanduser().resolve()
        return None
