"""Retrieval orchestrator: embed, hybrid search, score, compress.

``retrieve`` is the single entry point downstream agents depend on. An empty
result set is a normal zero-confidence answer; a broken search dependency is
raised as RetrievalError so callers can tell the two apart.
"""

import logging
from typing import Optional

from founder_memory.embedding.ollama import EmbeddingError, OllamaClient
from founder_memory.memory import scoring
from founder_memory.memory.compression import Compressor, concatenate
from founder_memory.memory.types import MemoryType, RetrievalResult, validate_project_id
from founder_memory.security import MAX_QUERY_LENGTH, Operation, RateLimiter, check_length, sanitize
from founder_memory.storage.hybrid import HybridStore, HybridStoreError

logger = logging.getLogger(__name__)

NO_MEMORY_TEXT = "No relevant memory found for this project."

DEFAULT_LIMIT = 8
MAX_LIMIT = 20
DEFAULT_MIN_SIMILARITY = 0.65


class RetrievalError(Exception):
    """Raised when the query cannot be embedded or the store cannot be searched."""

    pass


class Retriever:
    """Serves confidence-scored, compressed context for a project query.

    Args:
        store: Store adapter
        embedding_client: Embeds the query
        compressor: Compresses results; None returns raw concatenation
        rate_limiter: Optional limiter charged one retrieval and one embedding
        max_limit: Upper bound applied to the requested limit
        sanitize: Redact injection patterns from the query
    """

    def __init__(
        self,
        store: HybridStore,
        embedding_client: OllamaClient,
        compressor: Optional[Compressor] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_limit: int = MAX_LIMIT,
        sanitize: bool = True,
    ):
        self._store = store
        self._embedder = embedding_client
        self._compressor = compressor
        self._limiter = rate_limiter
        self.max_limit = max_limit
        self.sanitize = sanitize

    async def retrieve(
        self,
        project_id: str,
        query: str,
        limit: int = DEFAULT_LIMIT,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        required_types: Optional[list[MemoryType]] = None,
    ) -> RetrievalResult:
        """Answer a query from the project's active memory.

        Args:
            project_id: Project to search
            query: Natural-language question
            limit: Maximum chunks to use (clamped to 1..max_limit)
            min_similarity: Vector similarity floor
            required_types: Only consider these memory types

        Returns:
            RetrievalResult; when nothing matches, the "no relevant memory"
            text with confidence 0

        Raises:
            RetrievalError: If embedding or search fails
            RateLimitExceeded: If the project's retrieval or embedding quota is spent
            ValueError: On an invalid project_id, an empty query or a query
                over MAX_QUERY_LENGTH characters
        """
        validate_project_id(project_id)
        if not query or not query.strip():
            raise ValueError("Query cannot be empty")
        if not 0.0 <= min_similarity <= 1.0:
            raise ValueError(f"min_similarity must be in [0, 1], got {min_similarity}")
        limit = max(1, min(limit, self.max_limit))

        check_length(query, MAX_QUERY_LENGTH, what="Query")
        text = sanitize(query) if self.sanitize else query

        if self._limiter is not None:
            self._limiter.acquire(project_id, Operation.RETRIEVAL)
            self._limiter.acquire(project_id, Operation.EMBEDDING)

        try:
            query_vector = await self._embedder.embed(text, is_query=True)
        except EmbeddingError as e:
            raise RetrievalError(f"Failed to embed query: {e}") from e

        try:
            results = self._store.search(
                project_id,
                query_vector,
                text,
                min_similarity=min_similarity,
                limit=limit,
                memory_types=required_types,
            )
        except (HybridStoreError, ValueError) as e:
            raise RetrievalError(f"Search failed: {e}") from e

        if not results:
            logger.info(f"No memory above {min_similarity} for query in project {project_id}")
            return RetrievalResult(text=NO_MEMORY_TEXT, confidence=0.0)

        confidence = scoring.score(results)

        try:
            self._store.record_retrieval(
                project_id,
                [r.id for r in results],
                usefulness={r.id: r.similarity for r in results},
            )
        except HybridStoreError as e:
            logger.warning(f"Failed to record retrieval usage for project {project_id}: {e}")

        if self._compressor is not None:
            context, compressed = await self._compressor.compress(project_id, results)
        else:
            context, compressed = concatenate(results), False

        logger.info(
            f"Retrieved {len(results)} chunk(s) for project {project_id} "
            f"(confidence {confidence:.3f}, compressed={compressed})"
        )
        return RetrievalResult(
            text=context,
            confidence=confidence,
            results=results,
            compressed=compressed,
        )
