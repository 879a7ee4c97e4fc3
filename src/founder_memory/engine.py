"""MemoryEngine: the project-scoped memory API used by producers and agents.

Wires the store adapter, model clients, rate limiter and audit log into the
ingestion, retrieval and update components. Every public operation is
audited, including failures and rate-limit rejections.
"""

import logging
from typing import Any, Optional, Union

from founder_memory.audit import AuditLog
from founder_memory.completion.ollama import OllamaCompletionClient
from founder_memory.config import MemorySettings
from founder_memory.embedding.ollama import OllamaClient
from founder_memory.maintenance import analyze_health
from founder_memory.memory.classifier import Classifier
from founder_memory.memory.compression import Compressor
from founder_memory.memory.ingestion import IngestionPipeline
from founder_memory.memory.retrieval import Retriever
from founder_memory.memory.types import (
    ChunkMetadata,
    IngestOptions,
    IngestResult,
    MemoryChunk,
    MemoryType,
    RetrievalResult,
    UpdateResult,
    validate_project_id,
)
from founder_memory.memory.updates import ConflictResolver
from founder_memory.security import Operation, RateLimiter, check_length, sanitize
from founder_memory.storage.hybrid import HybridStore

logger = logging.getLogger(__name__)

MetadataArg = Optional[Union[ChunkMetadata, dict[str, Any]]]


def _metadata(metadata: MetadataArg, actor: Optional[str]) -> ChunkMetadata:
    meta = metadata if isinstance(metadata, ChunkMetadata) else ChunkMetadata.from_dict(metadata)
    if actor and not meta.actor:
        meta.actor = actor
    return meta


class MemoryEngine:
    """Project-scoped long-term memory.

    Args:
        store: Store adapter shared by all components
        embedding_client: Embedding service client
        completion_client: Completion service client (classification, compression)
        settings: Tuning; defaults to MemorySettings()
        rate_limiter: Limiter; defaults to one built from settings

    Example:
        >>> async with await MemoryEngine.create() as engine:
        ...     await engine.ingest("acme", "We closed a $1.2M seed round led by Foo Ventures.")
        ...     answer = await engine.retrieve("acme", "How much did we raise?")
        ...     print(answer.text, answer.confidence)
    """

    def __init__(
        self,
        store: HybridStore,
        embedding_client: OllamaClient,
        completion_client: OllamaCompletionClient,
        settings: Optional[MemorySettings] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.settings = settings or MemorySettings()
        self.store = store
        self.limiter = rate_limiter or RateLimiter.from_settings(self.settings)
        self.audit = AuditLog(store)
        self._embedder = embedding_client
        self._llm = completion_client

        s = self.settings
        self.classifier = Classifier(completion_client, self.limiter)
        self.resolver = ConflictResolver(
            store,
            embedding_client,
            self.limiter,
            threshold=s.conflict_similarity_threshold,
            founder_weight=s.founder_weight,
            agent_weight=s.agent_weight,
        )
        self.ingestion = IngestionPipeline(
            store,
            embedding_client,
            self.classifier,
            self.resolver,
            self.limiter,
            chunk_size=s.chunk_size,
            chunk_overlap=s.chunk_overlap,
            batch_size=s.batch_size,
            deduplicate=s.enable_deduplication,
            sanitize=s.enable_sanitization,
        )
        self.retriever = Retriever(
            store,
            embedding_client,
            Compressor(completion_client, self.limiter) if s.enable_compression else None,
            self.limiter,
            max_limit=s.max_limit,
            sanitize=s.enable_sanitization,
        )

    @classmethod
    async def create(
        cls,
        settings: Optional[MemorySettings] = None,
        ephemeral: bool = False,
    ) -> "MemoryEngine":
        """Build an engine with stores and clients configured from settings."""
        settings = settings or MemorySettings()
        store = await HybridStore.from_settings(settings, ephemeral=ephemeral)
        embedding_client = OllamaClient.from_settings(settings)
        completion_client = OllamaCompletionClient(
            host=settings.ollama_host,
            model=settings.completion_model,
            timeout=settings.ollama_timeout,
        )
        return cls(store, embedding_client, completion_client, settings)

    async def close(self) -> None:
        """Close clients and stores."""
        await self._embedder.close()
        await self._llm.close()
        await self.store.close()

    async def __aenter__(self) -> "MemoryEngine":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _clean(self, text: str) -> str:
        check_length(text)
        return sanitize(text) if self.settings.enable_sanitization else text

    # =========================================================================
    # Ingestion and retrieval
    # =========================================================================

    async def ingest(
        self,
        project_id: str,
        content: str,
        metadata: MetadataArg = None,
        options: Optional[IngestOptions] = None,
    ) -> IngestResult:
        """Ingest a document; see IngestionPipeline.ingest."""
        validate_project_id(project_id)
        options = options or IngestOptions()
        with self.audit.track(project_id, "ingest", options.actor, content) as entry:
            result = await self.ingestion.ingest(project_id, content, metadata, options)
            entry.result_size = result.inserted
            entry.details = {
                "chunks_total": result.chunks_total,
                "duplicates_skipped": result.duplicates_skipped,
                "failed": result.failed,
            }
        return result

    async def retrieve(
        self,
        project_id: str,
        query: str,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
        required_types: Optional[list[MemoryType]] = None,
        actor: Optional[str] = None,
    ) -> RetrievalResult:
        """Confidence-scored context for a query; see Retriever.retrieve."""
        validate_project_id(project_id)
        with self.audit.track(project_id, "retrieve", actor, query) as entry:
            result = await self.retriever.retrieve(
                project_id,
                query,
                limit=limit if limit is not None else self.settings.default_limit,
                min_similarity=(
                    min_similarity if min_similarity is not None else self.settings.min_similarity
                ),
                required_types=required_types,
            )
            entry.result_size = len(result.results)
            entry.score = result.confidence
        return result

    # =========================================================================
    # Updates
    # =========================================================================

    async def update(
        self,
        project_id: str,
        content: str,
        memory_type: Optional[MemoryType] = None,
        founder: bool = False,
        actor: Optional[str] = None,
        metadata: MetadataArg = None,
    ) -> UpdateResult:
        """Record an observation that may supersede an existing fact.

        The type is classified when not given. A conflicting active chunk of
        the same type is superseded, unless it is founder-sourced and this
        update is not.
        """
        validate_project_id(project_id)
        with self.audit.track(project_id, "update", actor, content) as entry:
            self.limiter.acquire(project_id, Operation.UPDATE)
            text = self._clean(content)
            if memory_type is None:
                memory_type = await self.classifier.classify(project_id, text)
            result = await self.resolver.update(
                project_id, text, memory_type, founder=founder, metadata=_metadata(metadata, actor)
            )
            entry.result_size = 1 if result.chunk_id else 0
            entry.score = result.similarity
            entry.details = result.to_dict()
        return result

    async def supersede(
        self,
        project_id: str,
        chunk_id: str,
        content: str,
        founder: bool = False,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> UpdateResult:
        """Replace a specific chunk with new content."""
        validate_project_id(project_id)
        with self.audit.track(project_id, "supersede", actor, content) as entry:
            self.limiter.acquire(project_id, Operation.UPDATE)
            result = await self.resolver.supersede(
                project_id,
                chunk_id,
                self._clean(content),
                founder=founder,
                reason=reason,
                metadata=_metadata(None, actor),
            )
            entry.details = result.to_dict()
        return result

    async def correct(
        self,
        project_id: str,
        chunk_id: str,
        content: str,
        reason: str,
        actor: Optional[str] = None,
    ) -> UpdateResult:
        """Founder correction of a specific chunk."""
        validate_project_id(project_id)
        with self.audit.track(project_id, "correct", actor, content) as entry:
            self.limiter.acquire(project_id, Operation.UPDATE)
            result = await self.resolver.correct(
                project_id, chunk_id, self._clean(content), reason, metadata=_metadata(None, actor)
            )
            entry.details = result.to_dict()
        return result

    async def refine(
        self,
        project_id: str,
        chunk_id: str,
        content: str,
        founder: bool = False,
        actor: Optional[str] = None,
    ) -> UpdateResult:
        """Add detail to a chunk without retiring it."""
        validate_project_id(project_id)
        with self.audit.track(project_id, "refine", actor, content) as entry:
            self.limiter.acquire(project_id, Operation.UPDATE)
            result = await self.resolver.refine(
                project_id, chunk_id, self._clean(content), founder=founder, metadata=_metadata(None, actor)
            )
            entry.details = result.to_dict()
        return result

    def invalidate(
        self,
        project_id: str,
        chunk_id: str,
        reason: str,
        actor: Optional[str] = None,
    ) -> UpdateResult:
        """Retire a chunk without a successor."""
        validate_project_id(project_id)
        with self.audit.track(project_id, "invalidate", actor, chunk_id) as entry:
            self.limiter.acquire(project_id, Operation.UPDATE)
            result = self.resolver.invalidate(project_id, chunk_id, reason)
            entry.details = result.to_dict()
        return result

    # =========================================================================
    # Inspection
    # =========================================================================

    def history(self, project_id: str, chunk_id: str) -> list[MemoryChunk]:
        """Supersession chain through a chunk, oldest first."""
        return self.resolver.history(project_id, chunk_id)

    def current(self, project_id: str, chunk_id: str) -> Optional[MemoryChunk]:
        """Live version of the fact a chunk belongs to, if any."""
        return self.resolver.current(project_id, chunk_id)

    def rate_limit_status(self, project_id: str) -> dict[str, Any]:
        """Remaining quota per operation class."""
        return self.limiter.status(validate_project_id(project_id))

    def audit_log(
        self,
        project_id: str,
        operation: Optional[str] = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        """Recent audit entries plus suspicious-activity warnings."""
        validate_project_id(project_id)
        return {
            "entries": self.audit.query(project_id, operation=operation, limit=limit),
            "warnings": self.audit.suspicious_activity(project_id),
        }

    def health(self, project_id: str) -> dict[str, Any]:
        """Stale memories, deep revision chains, pending syncs and retrieval usage."""
        return analyze_health(
            self.store,
            validate_project_id(project_id),
            max_chain_depth=self.settings.max_chain_depth,
        )

    async def sync(self, batch_size: int = 100) -> int:
        """Retry pending vector-store writes."""
        return await self.store.process_outbox(batch_size=batch_size)
