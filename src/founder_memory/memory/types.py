"""Core data types for the memory engine.

This module defines the data structures shared by ingestion, retrieval and
updates:
- MemoryType: closed set of memory categories
- ChunkMetadata: known annotation fields plus an open extension map
- MemoryChunk: one stored unit of knowledge
- SearchResult: one ranked hit from a hybrid search (never persisted)
- RetrievalResult / IngestResult / UpdateResult: operation results
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class MemoryType(Enum):
    """Categories a chunk can be classified into.

    - DECISION: a choice the team made
    - METRIC: a number the venture tracks
    - INVESTOR_FEEDBACK: what an investor said
    - TASK: work to be done
    - RESEARCH: market, competitor or customer findings
    - NOTE: anything else (also the classification fallback)
    """
    DECISION = "decision"
    METRIC = "metric"
    INVESTOR_FEEDBACK = "investor_feedback"
    TASK = "task"
    RESEARCH = "research"
    NOTE = "note"

    @classmethod
    def parse(cls, label: str) -> "MemoryType":
        """Parse a free-form label, tolerating case, spaces and hyphens.

        Raises:
            ValueError: If the label names no known type
        """
        normalized = label.strip().lower().replace("-", "_").replace(" ", "_")
        return cls(normalized)


class UpdateOutcome(Enum):
    """What the conflict resolver did with an incoming observation."""
    INSERTED = "inserted"
    SUPERSEDED = "superseded"
    SHADOWED = "shadowed"
    DUPLICATE = "duplicate"
    INVALIDATED = "invalidated"
    REFINED = "refined"


_PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


def validate_project_id(project_id: str) -> str:
    """Validate a project identifier and return it unchanged.

    Raises:
        ValueError: If project_id is empty or has unexpected characters
    """
    if not isinstance(project_id, str) or not _PROJECT_ID_PATTERN.match(project_id):
        raise ValueError(f"Invalid project_id {project_id!r}")
    return project_id


@dataclass
class ChunkMetadata:
    """Annotations attached to a chunk.

    Known fields are typed; anything else goes into ``extra``. None of these
    fields take part in tenant scoping.

    Attributes:
        source_id: Identifier of the document or event the chunk came from
        chunk_index: Position of the chunk within its source document
        event_type: Original event type recorded by the producer
        actor: Who recorded the observation (user id or agent name)
        reason: Why the chunk was created or invalidated (updates only)
        refines: Id of the chunk this one refines, if any
        extra: Open-ended annotations
    """
    source_id: Optional[str] = None
    chunk_index: Optional[int] = None
    event_type: Optional[str] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    refines: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("source_id", "chunk_index", "event_type", "actor", "reason", "refines")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            key: getattr(self, key) for key in self._KNOWN if getattr(self, key) is not None
        }
        if self.extra:
            data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ChunkMetadata":
        """Build metadata from a plain dict; unknown keys land in ``extra``."""
        if not data:
            return cls()
        extra = dict(data.get("extra") or {})
        known: dict[str, Any] = {}
        for key, value in data.items():
            if key == "extra":
                continue
            if key in cls._KNOWN:
                known[key] = value
            else:
                extra[key] = value
        if known.get("chunk_index") is not None:
            known["chunk_index"] = int(known["chunk_index"])
        return cls(extra=extra, **known)


@dataclass
class MemoryChunk:
    """A stored unit of knowledge.

    Chunks are never deleted. Superseding or invalidating a chunk flips
    ``is_active`` and, for supersession, sets ``superseded_by``.

    Attributes:
        id: Unique identifier
        project_id: Owning project
        content: Sanitized text fragment
        content_hash: SHA-256 of content, unique among active chunks of a project
        memory_type: Category assigned at ingestion
        embedding: Vector produced at ingestion time
        founder_weight: Ranking multiplier (1.0 agent, higher for founders)
        is_active: False once superseded or invalidated
        superseded_by: Id of the replacing chunk
        metadata: Typed annotations
        created_at: Insertion time
        retrieval_count: Times the chunk was returned by a retrieval
        last_retrieved_at: When it was last returned
        average_usefulness: Running mean of usefulness feedback, if any
    """
    id: str
    project_id: str
    content: str
    content_hash: str
    memory_type: MemoryType
    embedding: list[float] = field(default_factory=list)
    founder_weight: float = 1.0
    is_active: bool = True
    superseded_by: Optional[str] = None
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    created_at: datetime = field(default_factory=datetime.now)
    retrieval_count: int = 0
    last_retrieved_at: Optional[datetime] = None
    average_usefulness: Optional[float] = None

    def __post_init__(self) -> None:
        validate_project_id(self.project_id)
        if self.founder_weight <= 0:
            raise ValueError(f"founder_weight must be positive, got {self.founder_weight}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the embedding."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "content": self.content,
            "content_hash": self.content_hash,
            "memory_type": self.memory_type.value,
            "founder_weight": self.founder_weight,
            "is_active": self.is_active,
            "superseded_by": self.superseded_by,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat(),
            "retrieval_count": self.retrieval_count,
            "last_retrieved_at": self.last_retrieved_at.isoformat() if self.last_retrieved_at else None,
            "average_usefulness": self.average_usefulness,
        }


@dataclass
class SearchResult:
    """One hit from a hybrid search.

    Attributes:
        id: Chunk id
        content: Chunk text
        memory_type: Chunk category
        similarity: Vector similarity in [0, 1]
        keyword_score: Normalized keyword relevance in [0, 1]
        final_score: Blended, weighted and age-decayed score
        founder_weight: Weight of the underlying chunk
        metadata: Chunk annotations
        created_at: Chunk insertion time
    """
    id: str
    content: str
    memory_type: MemoryType
    similarity: float
    final_score: float
    keyword_score: float = 0.0
    founder_weight: float = 1.0
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "memory_type": self.memory_type.value,
            "similarity": self.similarity,
            "keyword_score": self.keyword_score,
            "final_score": self.final_score,
            "founder_weight": self.founder_weight,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RetrievalResult:
    """Context handed to downstream agents.

    ``confidence`` is advisory: callers should lower their own certainty
    when it is low.
    """
    text: str
    confidence: float
    results: list[SearchResult] = field(default_factory=list)
    compressed: bool = False

    @property
    def found(self) -> bool:
        return bool(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "found": self.found,
            "compressed": self.compressed,
            "sources": [r.id for r in self.results],
        }


@dataclass
class IngestOptions:
    """Per-call ingestion switches.

    Attributes:
        actor: Who recorded the content, stored in metadata and the audit log
        founder: True for human-sourced content (boosts founder_weight)
        memory_type: Skip classification and use this type for every chunk
        resolve_conflicts: Route each chunk through the conflict resolver
    """
    actor: Optional[str] = None
    founder: bool = False
    memory_type: Optional[MemoryType] = None
    resolve_conflicts: bool = False


@dataclass
class ChunkOutcome:
    """Result of one chunk's pipeline inside an ingestion batch."""
    index: int
    content: str
    content_hash: str
    memory_type: Optional[MemoryType] = None
    embedding: Optional[list[float]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.embedding is not None


@dataclass
class IngestResult:
    """Summary of one ``ingest`` call.

    Ingestion is not atomic: ``inserted`` may be smaller than ``chunks_total``
    when individual chunks fail or are duplicates.
    """
    project_id: str
    chunks_total: int = 0
    chunk_ids: list[str] = field(default_factory=list)
    duplicates_skipped: int = 0
    failed: int = 0
    superseded: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return len(self.chunk_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "chunks_total": self.chunks_total,
            "inserted": self.inserted,
            "chunk_ids": list(self.chunk_ids),
            "duplicates_skipped": self.duplicates_skipped,
            "failed": self.failed,
            "superseded": list(self.superseded),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class UpdateResult:
    """Result of a memory update.

    Attributes:
        outcome: What happened (see UpdateOutcome)
        chunk_id: Id of the chunk now holding the new content, if any
        previous_id: Id of the chunk that was superseded, invalidated,
            refined, or that shadows the new chunk
        similarity: Similarity between new and previous content, when known
    """
    outcome: UpdateOutcome
    chunk_id: Optional[str] = None
    previous_id: Optional[str] = None
    similarity: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "chunk_id": self.chunk_id,
            "previous_id": self.previous_id,
            "similarity": self.similarity,
        }
