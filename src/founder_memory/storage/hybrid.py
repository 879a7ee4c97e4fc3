"""Hybrid storage layer coordinating SQLite and ChromaDB.

The HybridStore is the engine's only store adapter. SQLite holds every chunk
(the source of truth); ChromaDB holds one vector per chunk for similarity
search. Writes use the outbox pattern:

1. Rows and outbox entries are written to SQLite in one transaction
2. The vector write is attempted immediately
3. If ChromaDB fails, the outbox entry stays pending for ``process_outbox``

Every read and write takes a ``project_id``. Vector hits are re-read from
SQLite with the same project filter before they are returned.
"""

import logging
import math
import time
from pathlib import Path
from typing import Any, Optional

from founder_memory.memory.types import (
    MemoryChunk,
    MemoryType,
    SearchResult,
    validate_project_id,
)
from founder_memory.storage.chromadb import ChromaStore, StorageError as ChromaStorageError
from founder_memory.storage.sqlite import SQLiteStore, SQLiteStoreError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


class HybridStoreError(Exception):
    """Custom exception for hybrid storage operations."""

    pass


def cosine_similarity(distance: float) -> float:
    """Convert ChromaDB cosine distance to cosine similarity.

    Opposed and orthogonal vectors both map to 0.
    """
    return max(0.0, min(1.0, 1.0 - distance))


class HybridStore:
    """Project-scoped chunk store combining SQLite and ChromaDB.

    Args:
        sqlite_store: SQLiteStore instance (chunks, FTS, outbox, audit)
        chroma_store: ChromaStore instance (vectors)
        dimension: Required length of every stored and query vector
        vector_weight: Weight of vector similarity in the final score
        keyword_weight: Weight of keyword relevance in the final score
        age_decay_days: Time constant of the exponential age decay
        candidate_multiplier: Vector candidates fetched per requested result
        sync_on_write: If True, write vectors to ChromaDB on each insert

    Example:
        >>> store = await HybridStore.create(ephemeral=True, dimension=1024)
        >>> ids = store.insert_chunks([chunk])
        >>> hits = store.search("acme", query_vector, "pricing", 0.65, 8)
    """

    def __init__(
        self,
        sqlite_store: SQLiteStore,
        chroma_store: ChromaStore,
        dimension: int,
        vector_weight: float = 0.7,
        keyword_weight: float = 0.3,
        age_decay_days: float = 90.0,
        candidate_multiplier: int = 3,
        sync_on_write: bool = True,
    ):
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self._sqlite = sqlite_store
        self._chroma = chroma_store
        self.dimension = dimension
        self.vector_weight = vector_weight
        self.keyword_weight = keyword_weight
        self.age_decay_days = age_decay_days
        self.candidate_multiplier = max(1, candidate_multiplier)
        self._sync_on_write = sync_on_write
        self._chroma_available = True

    @classmethod
    async def create(
        cls,
        sqlite_path: Optional[Path] = None,
        chroma_path: Optional[Path] = None,
        collection_name: str = "memory_chunks",
        dimension: int = 1024,
        ephemeral: bool = False,
        **kwargs: Any,
    ) -> "HybridStore":
        """Create a HybridStore with new component stores.

        Args:
            sqlite_path: Path to SQLite database (default: ~/.founder_memory/memory.db)
            chroma_path: Path to ChromaDB storage (default: ~/.founder_memory/chroma_db)
            collection_name: ChromaDB collection name
            dimension: Embedding dimension enforced on insert and search
            ephemeral: Use in-memory storage for testing
            **kwargs: Scoring options passed to the constructor

        Raises:
            HybridStoreError: If store initialization fails
        """
        try:
            sqlite_store = SQLiteStore(db_path=sqlite_path, ephemeral=ephemeral)
            chroma_store = ChromaStore(
                db_path=chroma_path,
                collection_name=collection_name,
                ephemeral=ephemeral,
            )
            return cls(
                sqlite_store=sqlite_store,
                chroma_store=chroma_store,
                dimension=dimension,
                **kwargs,
            )

        except (SQLiteStoreError, ChromaStorageError) as e:
            raise HybridStoreError(f"Failed to create HybridStore: {e}") from e

    @classmethod
    async def from_settings(cls, settings, ephemeral: bool = False) -> "HybridStore":
        """Create a HybridStore configured from MemorySettings."""
        return await cls.create(
            sqlite_path=settings.get_sqlite_path(),
            chroma_path=settings.get_chroma_path(),
            collection_name=settings.collection_name,
            dimension=settings.embedding_dimension,
            ephemeral=ephemeral,
            vector_weight=settings.vector_weight,
            keyword_weight=settings.keyword_weight,
            age_decay_days=settings.age_decay_days,
        )

    async def close(self) -> None:
        """Close the underlying stores."""
        self._sqlite.close()

    async def __aenter__(self) -> "HybridStore":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @staticmethod
    def new_chunk_id() -> str:
        """Generate an id for a chunk about to be inserted."""
        return SQLiteStore.generate_id()

    def _check_dimension(self, vector: list[float], what: str) -> None:
        if len(vector) != self.dimension:
            raise ValueError(
                f"{what} dimension {len(vector)} does not match store dimension {self.dimension}"
            )

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_chunks(self, chunks: list[MemoryChunk]) -> list[str]:
        """Persist new chunks and sync their vectors.

        Chunks whose content is already active in their project are skipped.

        Args:
            chunks: Chunks with embeddings of the store dimension

        Returns:
            Ids of the inserted chunks, in input order

        Raises:
            HybridStoreError: If the SQLite write fails (ChromaDB failures are non-fatal)
            ValueError: If a chunk's embedding has the wrong dimension
        """
        for c in chunks:
            validate_project_id(c.project_id)
            self._check_dimension(c.embedding, f"Chunk {c.id} embedding")

        try:
            inserted = self._sqlite.insert_chunks(chunks)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to insert chunks: {e}") from e

        if inserted and self._sync_on_write:
            inserted_set = set(inserted)
            self._sync_chunks_to_chroma([c for c in chunks if c.id in inserted_set])
        return inserted

    def archive(
        self,
        project_id: str,
        chunk_id: str,
        superseded_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Deactivate a chunk, optionally linking it to its successor.

        Returns:
            True if the chunk was active and is now archived

        Raises:
            HybridStoreError: If the SQLite update fails
            ValueError: If the successor is not a chunk of the same project
        """
        try:
            archived = self._sqlite.archive(
                project_id, chunk_id, superseded_by=superseded_by, reason=reason
            )
            if not archived:
                return False
            chunk = self._sqlite.get_chunk(project_id, chunk_id)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to archive chunk {chunk_id}: {e}") from e

        if chunk is not None and self._sync_on_write:
            self._sync_chunks_to_chroma([chunk])
        return True

    def record_retrieval(
        self,
        project_id: str,
        chunk_ids: list[str],
        usefulness: Optional[dict[str, float]] = None,
    ) -> int:
        """Bump the retrieval counters of chunks returned by a search.

        Raises:
            HybridStoreError: If the update fails
        """
        try:
            return self._sqlite.record_retrieval(project_id, chunk_ids, usefulness)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to record retrieval: {e}") from e

    @staticmethod
    def _vector_metadata(chunk: MemoryChunk) -> dict[str, Any]:
        return {
            "project_id": chunk.project_id,
            "memory_type": chunk.memory_type.value,
            "is_active": chunk.is_active,
        }

    def _sync_chunks_to_chroma(self, chunks: list[MemoryChunk]) -> bool:
        """Upsert vectors with current metadata and settle their outbox entries.

        Returns:
            True if ChromaDB accepted the write
        """
        ids = [c.id for c in chunks]
        try:
            self._chroma.upsert(
                ids=ids,
                embeddings=[c.embedding for c in chunks],
                documents=[c.content for c in chunks],
                metadatas=[self._vector_metadata(c) for c in chunks],
            )
        except ChromaStorageError as e:
            logger.warning(f"ChromaDB sync failed for {len(ids)} chunk(s): {e}")
            self._chroma_available = False
            self._settle_outbox(ids, error_message=str(e))
            return False

        self._chroma_available = True
        self._settle_outbox(ids)
        logger.debug(f"Synced {len(ids)} chunk(s) to ChromaDB")
        return True

    def _settle_outbox(self, chunk_ids: list[str], error_message: Optional[str] = None) -> None:
        # A failure here leaves entries pending; the next process_outbox replays them
        try:
            self._sqlite.mark_outbox_processed(chunk_ids, error_message=error_message)
        except SQLiteStoreError as e:
            logger.warning(f"Failed to update outbox for {len(chunk_ids)} chunk(s): {e}")

    async def process_outbox(self, batch_size: int = 100) -> int:
        """Retry pending vector syncs from the outbox.

        Each pending entry is replayed from the chunk's current SQLite state,
        so a later archive is never overwritten by an earlier insert.

        Returns:
            Number of chunks successfully synced
        """
        try:
            pending = self._sqlite.get_pending_outbox(limit=batch_size)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to read outbox: {e}") from e

        by_project: dict[str, list[str]] = {}
        for entry in pending:
            by_project.setdefault(entry["project_id"], []).append(entry["chunk_id"])

        synced = 0
        for project_id, chunk_ids in by_project.items():
            chunks = list(self._sqlite.get_chunks(project_id, chunk_ids).values())
            missing = set(chunk_ids) - {c.id for c in chunks}
            if missing:
                self._settle_outbox(sorted(missing))
            if chunks and self._sync_chunks_to_chroma(chunks):
                synced += len(chunks)

        if synced:
            logger.info(f"Outbox processed: {synced} chunk(s) synced")
        return synced

    def get_outbox_status(self, project_id: Optional[str] = None) -> dict[str, Any]:
        """Pending vector syncs and whether ChromaDB last accepted a write."""
        return {
            "pending": self._sqlite.count_pending_outbox(project_id),
            "chroma_available": self._chroma_available,
        }

    # =========================================================================
    # Reads
    # =========================================================================

    def search(
        self,
        project_id: str,
        query_vector: list[float],
        query_text: str,
        min_similarity: float,
        limit: int,
        memory_types: Optional[list[MemoryType]] = None,
    ) -> list[SearchResult]:
        """Hybrid search over a project's active chunks.

        Candidates come from the vector index filtered by project, activity
        and type. Only candidates with similarity >= min_similarity survive.
        Each survivor is scored as::

            (vector_weight * similarity + keyword_weight * keyword)
                * founder_weight * exp(-age_days / age_decay_days)

        where ``keyword`` is the candidate's BM25 relevance normalized to
        [0, 1] across the candidate set.

        Args:
            project_id: Project to search; required
            query_vector: Query embedding of the store dimension
            query_text: Query text for keyword relevance
            min_similarity: Similarity floor in [0, 1]
            limit: Maximum number of results
            memory_types: Restrict to these types (None for all)

        Returns:
            Results ordered by final_score, highest first

        Raises:
            HybridStoreError: If the vector index or SQLite cannot be queried
            ValueError: On a bad project_id, dimension or limit
        """
        validate_project_id(project_id)
        self._check_dimension(query_vector, "Query vector")
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")

        conditions: list[dict[str, Any]] = [
            {"project_id": project_id},
            {"is_active": True},
        ]
        if memory_types:
            conditions.append({"memory_type": {"$in": [t.value for t in memory_types]}})

        try:
            hits = self._chroma.query(
                query_embedding=query_vector,
                n_results=limit * self.candidate_multiplier,
                where={"$and": conditions},
            )
            self._chroma_available = True
        except ChromaStorageError as e:
            self._chroma_available = False
            raise HybridStoreError(f"Vector search failed: {e}") from e

        similarities: dict[str, float] = {}
        for chunk_id, distance in zip(hits["ids"], hits["distances"]):
            similarity = cosine_similarity(distance)
            if similarity >= min_similarity:
                similarities[chunk_id] = similarity
        if not similarities:
            return []

        try:
            rows = self._sqlite.get_chunks(project_id, list(similarities), active_only=True)
            keyword = self._sqlite.keyword_scores(project_id, query_text, list(rows))
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to enrich search results: {e}") from e

        allowed = set(memory_types) if memory_types else None
        max_keyword = max((abs(v) for v in keyword.values()), default=0.0)
        now = time.time()

        results: list[SearchResult] = []
        for chunk_id, chunk in rows.items():
            if allowed is not None and chunk.memory_type not in allowed:
                continue
            similarity = similarities[chunk_id]
            keyword_score = abs(keyword[chunk_id]) / max_keyword if chunk_id in keyword and max_keyword else 0.0
            age_days = max(0.0, now - chunk.created_at.timestamp()) / SECONDS_PER_DAY
            final_score = (
                (self.vector_weight * similarity + self.keyword_weight * keyword_score)
                * chunk.founder_weight
                * math.exp(-age_days / self.age_decay_days)
            )
            results.append(
                SearchResult(
                    id=chunk.id,
                    content=chunk.content,
                    memory_type=chunk.memory_type,
                    similarity=similarity,
                    final_score=final_score,
                    keyword_score=keyword_score,
                    founder_weight=chunk.founder_weight,
                    metadata=chunk.metadata,
                    created_at=chunk.created_at,
                )
            )

        results.sort(key=lambda r: (r.final_score, r.similarity), reverse=True)
        return results[:limit]

    def existing_hashes(self, project_id: str, hashes: list[str]) -> set[str]:
        """Which of ``hashes`` already belong to active chunks of the project.

        Raises:
            HybridStoreError: If the lookup fails
        """
        try:
            return self._sqlite.existing_hashes(project_id, hashes)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to check existing hashes: {e}") from e

    def get_chunk(self, project_id: str, chunk_id: str) -> Optional[MemoryChunk]:
        """Get one of the project's chunks, active or not.

        Raises:
            HybridStoreError: If the read fails
        """
        try:
            return self._sqlite.get_chunk(project_id, chunk_id)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to get chunk {chunk_id}: {e}") from e

    def get_predecessors(self, project_id: str, chunk_id: str) -> list[MemoryChunk]:
        """Chunks of the project superseded by chunk_id.

        Raises:
            HybridStoreError: If the read fails
        """
        try:
            return self._sqlite.get_predecessors(project_id, chunk_id)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to get predecessors of {chunk_id}: {e}") from e

    def list_chunks(
        self,
        project_id: str,
        active_only: bool = True,
        memory_type: Optional[MemoryType] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryChunk]:
        """List the project's chunks, newest first.

        Raises:
            HybridStoreError: If the read fails
        """
        try:
            return self._sqlite.list_chunks(
                project_id, active_only=active_only, memory_type=memory_type, limit=limit
            )
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to list chunks: {e}") from e

    def count_chunks(self, project_id: str, active_only: bool = True) -> int:
        """Number of the project's chunks.

        Raises:
            HybridStoreError: If the count fails
        """
        try:
            return self._sqlite.count_chunks(project_id, active_only=active_only)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to count chunks: {e}") from e

    # =========================================================================
    # Audit Operations (delegated to SQLite)
    # =========================================================================

    def add_audit_entry(self, project_id: str, operation: str, status: str, **fields: Any) -> int:
        """Append an audit entry.

        Raises:
            HybridStoreError: If the write fails
        """
        try:
            return self._sqlite.add_audit_entry(project_id, operation, status, **fields)
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to write audit entry: {e}") from e

    def get_audit_entries(
        self,
        project_id: str,
        operation: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Audit entries for a project, newest first.

        Raises:
            HybridStoreError: If the read fails
        """
        try:
            return self._sqlite.get_audit_entries(
                project_id, operation=operation, since=since, limit=limit
            )
        except SQLiteStoreError as e:
            raise HybridStoreError(f"Failed to read audit log: {e}") from e

    @property
    def chroma_available(self) -> bool:
        """Whether the last ChromaDB operation succeeded."""
        return self._chroma_available
