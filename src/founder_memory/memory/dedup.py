"""Per-project content deduplication."""

import logging
from typing import Protocol, TypeVar

from founder_memory.storage.hybrid import HybridStore, HybridStoreError

logger = logging.getLogger(__name__)


class Hashed(Protocol):
    content_hash: str


T = TypeVar("T", bound=Hashed)


def filter_new(store: HybridStore, project_id: str, candidates: list[T]) -> tuple[list[T], int]:
    """Drop candidates whose content is already active in the project.

    Uses one batched existence check for all hashes. Candidates repeating a
    hash earlier in the same batch are dropped too. If the existence check
    fails every candidate is kept.

    Args:
        store: Store adapter
        project_id: Project the candidates belong to
        candidates: Objects carrying a ``content_hash``

    Returns:
        (new candidates in input order, number of duplicates dropped)
    """
    if not candidates:
        return [], 0

    try:
        existing = store.existing_hashes(project_id, [c.content_hash for c in candidates])
    except HybridStoreError as e:
        logger.warning(f"Dedup check failed for project {project_id}, inserting all: {e}")
        existing = set()

    seen: set[str] = set(existing)
    fresh: list[T] = []
    for candidate in candidates:
        if candidate.content_hash in seen:
            continue
        seen.add(candidate.content_hash)
        fresh.append(candidate)

    skipped = len(candidates) - len(fresh)
    if skipped:
        logger.debug(f"Dedup skipped {skipped} chunk(s) in project {project_id}")
    return fresh, skipped
