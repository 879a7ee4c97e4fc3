"""Ingestion pipeline: sanitize, chunk, dedup, classify and embed, store.

Chunks are processed in fixed-size batches. Inside a batch every chunk is
classified and embedded concurrently, each in its own failure boundary; the
batch's outcomes are merged in chunk order once all of them finish. Batches
run one after another to bound concurrent calls to the model server.

Ingestion is not atomic. Failed chunks are logged and dropped, and the rest
are stored.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional, Union

from founder_memory.embedding.ollama import EmbeddingError, OllamaClient
from founder_memory.memory import dedup
from founder_memory.memory.chunking import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    chunk,
    content_hash,
)
from founder_memory.memory.classifier import Classifier
from founder_memory.memory.types import (
    ChunkMetadata,
    ChunkOutcome,
    IngestOptions,
    IngestResult,
    MemoryChunk,
    UpdateOutcome,
    validate_project_id,
)
from founder_memory.memory.updates import ConflictResolutionError, ConflictResolver
from founder_memory.security import Operation, RateLimiter, check_length, scan
from founder_memory.storage.hybrid import HybridStore, HybridStoreError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5


class IngestionPipeline:
    """Turns free text into stored, classified, embedded chunks.

    Args:
        store: Store adapter
        embedding_client: Embeds chunk text
        classifier: Assigns memory types
        resolver: Conflict resolver used when ``resolve_conflicts`` is set
        rate_limiter: Optional limiter charged one embedding per new chunk
        chunk_size: Chunk window size
        chunk_overlap: Overlap between windows
        batch_size: Chunks processed concurrently
        deduplicate: Skip chunks already active in the project
        sanitize: Redact injection patterns before chunking
    """

    def __init__(
        self,
        store: HybridStore,
        embedding_client: OllamaClient,
        classifier: Classifier,
        resolver: ConflictResolver,
        rate_limiter: Optional[RateLimiter] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        batch_size: int = DEFAULT_BATCH_SIZE,
        deduplicate: bool = True,
        sanitize: bool = True,
    ):
        if chunk_size <= chunk_overlap:
            raise ValueError(
                f"chunk_size ({chunk_size}) must be greater than chunk_overlap ({chunk_overlap})"
            )
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self._store = store
        self._embedder = embedding_client
        self._classifier = classifier
        self._resolver = resolver
        self._limiter = rate_limiter
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.batch_size = batch_size
        self.deduplicate = deduplicate
        self.sanitize = sanitize

    async def _process_chunk(
        self,
        project_id: str,
        candidate: ChunkOutcome,
        options: IngestOptions,
    ) -> ChunkOutcome:
        """Classify and embed one chunk; failures are captured, not raised."""
        try:
            if options.memory_type is not None:
                memory_type = options.memory_type
                embedding = await self._embedder.embed(candidate.content)
            else:
                memory_type, embedding = await asyncio.gather(
                    self._classifier.classify(project_id, candidate.content),
                    self._embedder.embed(candidate.content),
                )
        except (EmbeddingError, ValueError) as e:
            logger.warning(f"Chunk {candidate.index} failed in project {project_id}: {e}")
            return replace(candidate, error=str(e))

        return replace(candidate, memory_type=memory_type, embedding=embedding)

    async def _run_batch(
        self,
        project_id: str,
        batch: list[ChunkOutcome],
        options: IngestOptions,
    ) -> list[ChunkOutcome]:
        results = await asyncio.gather(
            *(self._process_chunk(project_id, c, options) for c in batch),
            return_exceptions=True,
        )
        outcomes: list[ChunkOutcome] = []
        for candidate, result in zip(batch, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    f"Chunk {candidate.index} failed in project {project_id}: "
                    f"{type(result).__name__}: {result}"
                )
                outcomes.append(replace(candidate, error=f"{type(result).__name__}: {result}"))
            else:
                outcomes.append(result)
        return outcomes

    def _to_chunk(
        self,
        project_id: str,
        outcome: ChunkOutcome,
        base: ChunkMetadata,
        options: IngestOptions,
    ) -> MemoryChunk:
        return MemoryChunk(
            id=self._store.new_chunk_id(),
            project_id=project_id,
            content=outcome.content,
            content_hash=outcome.content_hash,
            memory_type=outcome.memory_type,
            embedding=outcome.embedding,
            founder_weight=self._resolver.weight_for(options.founder),
            metadata=replace(base, chunk_index=outcome.index, extra=dict(base.extra)),
            created_at=datetime.now(),
        )

    async def ingest(
        self,
        project_id: str,
        content: str,
        metadata: Optional[Union[ChunkMetadata, dict[str, Any]]] = None,
        options: Optional[IngestOptions] = None,
    ) -> IngestResult:
        """Ingest a document into a project's memory.

        Args:
            project_id: Owning project
            content: Raw text
            metadata: Document-level annotations copied onto every chunk
            options: Ingestion switches

        Returns:
            IngestResult describing inserted, duplicate and failed chunks

        Raises:
            RateLimitExceeded: If the project's embedding quota cannot cover
                the new chunks (nothing is stored)
            ValueError: On an invalid project_id or content over
                MAX_CONTENT_LENGTH characters (nothing is stored)
        """
        validate_project_id(project_id)
        check_length(content)
        options = options or IngestOptions()
        base = metadata if isinstance(metadata, ChunkMetadata) else ChunkMetadata.from_dict(metadata)
        if options.actor and not base.actor:
            base = replace(base, actor=options.actor)

        result = IngestResult(project_id=project_id)

        text = content
        if self.sanitize:
            report = scan(content)
            text = report.text
            result.warnings.extend(report.warnings)

        windows = chunk(text, size=self.chunk_size, overlap=self.chunk_overlap)
        result.chunks_total = len(windows)
        if not windows:
            return result

        candidates = [
            ChunkOutcome(index=i, content=w, content_hash=content_hash(w))
            for i, w in enumerate(windows)
        ]
        if self.deduplicate:
            candidates, result.duplicates_skipped = dedup.filter_new(
                self._store, project_id, candidates
            )
        if not candidates:
            logger.info(f"Nothing new to ingest in project {project_id}")
            return result

        if self._limiter is not None:
            self._limiter.acquire(project_id, Operation.EMBEDDING, cost=len(candidates))

        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            outcomes = await self._run_batch(project_id, batch, options)

            ready: list[MemoryChunk] = []
            for outcome in outcomes:
                if outcome.ok:
                    ready.append(self._to_chunk(project_id, outcome, base, options))
                else:
                    result.failed += 1
                    result.errors.append(f"chunk {outcome.index}: {outcome.error}")

            if options.resolve_conflicts:
                self._resolve_batch(project_id, ready, options, result)
            else:
                self._store_batch(ready, result)

        logger.info(
            f"Ingested {result.inserted}/{result.chunks_total} chunk(s) into {project_id} "
            f"({result.duplicates_skipped} duplicate, {result.failed} failed)"
        )
        return result

    def _store_batch(self, chunks: list[MemoryChunk], result: IngestResult) -> None:
        if not chunks:
            return
        try:
            inserted = self._store.insert_chunks(chunks)
        except HybridStoreError as e:
            logger.warning(f"Failed to store batch of {len(chunks)} chunk(s): {e}")
            result.failed += len(chunks)
            result.errors.append(f"store: {e}")
            return
        result.chunk_ids.extend(inserted)
        result.duplicates_skipped += len(chunks) - len(inserted)

    def _resolve_batch(
        self,
        project_id: str,
        chunks: list[MemoryChunk],
        options: IngestOptions,
        result: IngestResult,
    ) -> None:
        for c in chunks:
            try:
                update = self._resolver.resolve(
                    project_id,
                    c.content,
                    c.memory_type,
                    c.embedding,
                    founder=options.founder,
                    metadata=c.metadata,
                )
            except ConflictResolutionError as e:
                logger.warning(f"Conflict resolution failed for chunk {c.metadata.chunk_index}: {e}")
                result.failed += 1
                result.errors.append(f"chunk {c.metadata.chunk_index}: {e}")
                continue

            if update.outcome is UpdateOutcome.DUPLICATE:
                result.duplicates_skipped += 1
            elif update.chunk_id is not None:
                result.chunk_ids.append(update.chunk_id)
                if update.outcome is UpdateOutcome.SUPERSEDED and update.previous_id:
                    result.superseded.append(update.previous_id)
