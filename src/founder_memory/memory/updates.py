"""Memory updates, conflict resolution and supersession history.

A fact moves through two states: active, then superseded. When a new
observation is similar enough to an active chunk of the same type and
project, the newer version is inserted and the older one is archived with
``superseded_by`` pointing at it. History is never pruned, so the chain
answers "what did we believe, and when did it change".

Founder-sourced chunks carry a higher ``founder_weight``. An agent update
that conflicts with a founder chunk does not replace it: the agent's version
is stored inactive and linked to the founder chunk ("shadowed").
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from founder_memory.embedding.ollama import EmbeddingError, OllamaClient
from founder_memory.memory.chunking import content_hash
from founder_memory.memory.types import (
    ChunkMetadata,
    MemoryChunk,
    MemoryType,
    SearchResult,
    UpdateOutcome,
    UpdateResult,
    validate_project_id,
)
from founder_memory.security import Operation, RateLimiter
from founder_memory.storage.hybrid import HybridStore, HybridStoreError

logger = logging.getLogger(__name__)

CONFLICT_SIMILARITY_THRESHOLD = 0.85
CONFLICT_CANDIDATES = 5


class ConflictResolutionError(Exception):
    """Raised when an update cannot be applied (missing target, failed write)."""

    pass


class ConflictResolver:
    """Applies updates to a project's memory without deleting history.

    Args:
        store: Store adapter
        embedding_client: Embeds new content
        rate_limiter: Optional limiter charged for embeddings
        threshold: Similarity at or above which two chunks describe the same fact
        founder_weight: Weight given to founder-sourced chunks
        agent_weight: Weight given to agent-sourced chunks
    """

    def __init__(
        self,
        store: HybridStore,
        embedding_client: OllamaClient,
        rate_limiter: Optional[RateLimiter] = None,
        threshold: float = CONFLICT_SIMILARITY_THRESHOLD,
        founder_weight: float = 1.5,
        agent_weight: float = 1.0,
    ):
        self._store = store
        self._embedder = embedding_client
        self._limiter = rate_limiter
        self.threshold = threshold
        self.founder_weight = founder_weight
        self.agent_weight = agent_weight

    def weight_for(self, founder: bool) -> float:
        return self.founder_weight if founder else self.agent_weight

    async def _embed(self, project_id: str, content: str) -> list[float]:
        if self._limiter is not None:
            self._limiter.acquire(project_id, Operation.EMBEDDING)
        try:
            return await self._embedder.embed(content)
        except EmbeddingError as e:
            raise ConflictResolutionError(f"Failed to embed update: {e}") from e

    def _require_active(self, project_id: str, chunk_id: str) -> MemoryChunk:
        try:
            chunk = self._store.get_chunk(project_id, chunk_id)
        except HybridStoreError as e:
            raise ConflictResolutionError(f"Failed to load chunk {chunk_id}: {e}") from e
        if chunk is None:
            raise ConflictResolutionError(f"Chunk {chunk_id} not found in project {project_id}")
        if not chunk.is_active:
            raise ConflictResolutionError(
                f"Chunk {chunk_id} is no longer active (superseded by {chunk.superseded_by})"
            )
        return chunk

    def _insert(self, chunk: MemoryChunk) -> bool:
        try:
            return bool(self._store.insert_chunks([chunk]))
        except HybridStoreError as e:
            raise ConflictResolutionError(f"Failed to store new version: {e}") from e

    def _archive(
        self,
        project_id: str,
        chunk_id: str,
        superseded_by: Optional[str],
        reason: Optional[str],
    ) -> bool:
        try:
            return self._store.archive(project_id, chunk_id, superseded_by=superseded_by, reason=reason)
        except HybridStoreError as e:
            raise ConflictResolutionError(f"Failed to archive chunk {chunk_id}: {e}") from e

    def find_conflict(
        self,
        project_id: str,
        embedding: list[float],
        content: str,
        memory_type: MemoryType,
    ) -> Optional[SearchResult]:
        """Most similar active chunk of the same type at or above the threshold."""
        try:
            candidates = self._store.search(
                project_id,
                embedding,
                content,
                min_similarity=self.threshold,
                limit=CONFLICT_CANDIDATES,
                memory_types=[memory_type],
            )
        except HybridStoreError as e:
            raise ConflictResolutionError(f"Conflict search failed: {e}") from e
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.similarity)

    def resolve(
        self,
        project_id: str,
        content: str,
        memory_type: MemoryType,
        embedding: list[float],
        founder: bool = False,
        metadata: Optional[ChunkMetadata] = None,
    ) -> UpdateResult:
        """Store an observation, superseding the active chunk it conflicts with.

        Content must already be sanitized and embedded.

        Returns:
            UpdateResult with outcome INSERTED, SUPERSEDED, SHADOWED or DUPLICATE

        Raises:
            ConflictResolutionError: If the store cannot be searched or written
        """
        validate_project_id(project_id)
        new_hash = content_hash(content)
        weight = self.weight_for(founder)

        conflict = self.find_conflict(project_id, embedding, content, memory_type)
        if conflict is not None and content_hash(conflict.content) == new_hash:
            return UpdateResult(
                outcome=UpdateOutcome.DUPLICATE,
                chunk_id=conflict.id,
                previous_id=conflict.id,
                similarity=conflict.similarity,
            )

        chunk = MemoryChunk(
            id=self._store.new_chunk_id(),
            project_id=project_id,
            content=content,
            content_hash=new_hash,
            memory_type=memory_type,
            embedding=embedding,
            founder_weight=weight,
            metadata=metadata or ChunkMetadata(),
            created_at=datetime.now(),
        )

        if conflict is None:
            if not self._insert(chunk):
                return UpdateResult(outcome=UpdateOutcome.DUPLICATE)
            return UpdateResult(outcome=UpdateOutcome.INSERTED, chunk_id=chunk.id)

        if conflict.founder_weight > weight:
            # The founder's version stays current; keep the agent's for history.
            shadowed = replace(chunk, is_active=False, superseded_by=conflict.id)
            self._insert(shadowed)
            logger.info(
                f"Update shadowed by founder memory {conflict.id} in project {project_id}"
            )
            return UpdateResult(
                outcome=UpdateOutcome.SHADOWED,
                chunk_id=shadowed.id,
                previous_id=conflict.id,
                similarity=conflict.similarity,
            )

        if not self._insert(chunk):
            return UpdateResult(outcome=UpdateOutcome.DUPLICATE, previous_id=conflict.id)
        self._archive(project_id, conflict.id, superseded_by=chunk.id, reason="Superseded by newer information")
        logger.info(f"Chunk {conflict.id} superseded by {chunk.id} in project {project_id}")
        return UpdateResult(
            outcome=UpdateOutcome.SUPERSEDED,
            chunk_id=chunk.id,
            previous_id=conflict.id,
            similarity=conflict.similarity,
        )

    async def update(
        self,
        project_id: str,
        content: str,
        memory_type: MemoryType,
        founder: bool = False,
        metadata: Optional[ChunkMetadata] = None,
    ) -> UpdateResult:
        """Embed and resolve a new observation against the project's memory."""
        if not content or not content.strip():
            raise ValueError("Update content cannot be empty")
        embedding = await self._embed(project_id, content)
        return self.resolve(project_id, content, memory_type, embedding, founder, metadata)

    async def supersede(
        self,
        project_id: str,
        chunk_id: str,
        content: str,
        founder: bool = False,
        reason: Optional[str] = None,
        metadata: Optional[ChunkMetadata] = None,
    ) -> UpdateResult:
        """Replace a specific active chunk with new content.

        The new chunk inherits the target's memory type.

        Raises:
            ConflictResolutionError: If the target is missing or inactive
        """
        if not content or not content.strip():
            raise ValueError("Update content cannot be empty")
        target = self._require_active(project_id, chunk_id)
        embedding = await self._embed(project_id, content)

        meta = metadata or ChunkMetadata()
        if reason:
            meta = replace(meta, reason=reason)
        chunk = MemoryChunk(
            id=self._store.new_chunk_id(),
            project_id=project_id,
            content=content,
            content_hash=content_hash(content),
            memory_type=target.memory_type,
            embedding=embedding,
            founder_weight=self.weight_for(founder),
            metadata=meta,
            created_at=datetime.now(),
        )
        if chunk.content_hash == target.content_hash:
            return UpdateResult(outcome=UpdateOutcome.DUPLICATE, chunk_id=target.id, previous_id=target.id)

        if not self._insert(chunk):
            # Same content is already active elsewhere in the project
            return UpdateResult(outcome=UpdateOutcome.DUPLICATE, previous_id=target.id)
        self._archive(project_id, target.id, superseded_by=chunk.id, reason=reason)
        logger.info(f"Chunk {target.id} superseded by {chunk.id} in project {project_id}")
        return UpdateResult(outcome=UpdateOutcome.SUPERSEDED, chunk_id=chunk.id, previous_id=target.id)

    async def correct(
        self,
        project_id: str,
        chunk_id: str,
        content: str,
        reason: str,
        metadata: Optional[ChunkMetadata] = None,
    ) -> UpdateResult:
        """Founder correction: replace a chunk with founder-weighted content."""
        return await self.supersede(
            project_id,
            chunk_id,
            content,
            founder=True,
            reason=f"Corrected by founder: {reason}",
            metadata=metadata,
        )

    def invalidate(self, project_id: str, chunk_id: str, reason: str) -> UpdateResult:
        """Archive a chunk without a successor.

        Raises:
            ConflictResolutionError: If the chunk is missing or already inactive
        """
        self._require_active(project_id, chunk_id)
        self._archive(project_id, chunk_id, superseded_by=None, reason=reason)
        logger.info(f"Chunk {chunk_id} invalidated in project {project_id}: {reason}")
        return UpdateResult(outcome=UpdateOutcome.INVALIDATED, previous_id=chunk_id)

    async def refine(
        self,
        project_id: str,
        chunk_id: str,
        content: str,
        founder: bool = False,
        metadata: Optional[ChunkMetadata] = None,
    ) -> UpdateResult:
        """Add detail to a chunk; both the original and the refinement stay active.

        Raises:
            ConflictResolutionError: If the target is missing or inactive
        """
        if not content or not content.strip():
            raise ValueError("Refinement content cannot be empty")
        target = self._require_active(project_id, chunk_id)
        embedding = await self._embed(project_id, content)

        meta = replace(metadata or ChunkMetadata(), refines=target.id)
        chunk = MemoryChunk(
            id=self._store.new_chunk_id(),
            project_id=project_id,
            content=content,
            content_hash=content_hash(content),
            memory_type=target.memory_type,
            embedding=embedding,
            founder_weight=self.weight_for(founder),
            metadata=meta,
            created_at=datetime.now(),
        )
        if not self._insert(chunk):
            return UpdateResult(outcome=UpdateOutcome.DUPLICATE, previous_id=target.id)
        return UpdateResult(outcome=UpdateOutcome.REFINED, chunk_id=chunk.id, previous_id=target.id)

    # =========================================================================
    # History
    # =========================================================================

    def history(self, project_id: str, chunk_id: str) -> list[MemoryChunk]:
        """Full supersession chain through a chunk, in chain order.

        Includes every ancestor that was superseded into the chain (also
        shadowed versions) and every successor up to the current version.
        Every version is listed before its successor; versions the same
        number of steps back are ordered oldest first.

        Raises:
            ConflictResolutionError: If the chunk does not exist in the project
        """
        try:
            start = self._store.get_chunk(project_id, chunk_id)
            if start is None:
                raise ConflictResolutionError(f"Chunk {chunk_id} not found in project {project_id}")

            seen = {start.id}
            levels: list[list[MemoryChunk]] = []
            frontier = [start.id]
            while frontier:
                level: list[MemoryChunk] = []
                for current_id in frontier:
                    for parent in self._store.get_predecessors(project_id, current_id):
                        if parent.id not in seen:
                            seen.add(parent.id)
                            level.append(parent)
                if level:
                    levels.append(level)
                frontier = [c.id for c in level]

            successors: list[MemoryChunk] = []
            node = start
            while node.superseded_by and node.superseded_by not in seen:
                successor = self._store.get_chunk(project_id, node.superseded_by)
                if successor is None:
                    break
                seen.add(successor.id)
                successors.append(successor)
                node = successor

        except HybridStoreError as e:
            raise ConflictResolutionError(f"Failed to read history of {chunk_id}: {e}") from e

        ancestors = [c for level in reversed(levels) for c in sorted(level, key=lambda c: c.created_at)]
        return ancestors + [start] + successors

    def current(self, project_id: str, chunk_id: str) -> Optional[MemoryChunk]:
        """Follow ``superseded_by`` links to the live version of a fact.

        Returns None if the chain ends in an invalidated chunk.
        """
        chain = self.history(project_id, chunk_id)
        latest = chain[-1]
        return latest if latest.is_active else None
