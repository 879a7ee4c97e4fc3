"""Memory health analysis for a project.

Checks for:
1. Stale memories: active chunks older than their type's shelf life
2. Deep supersession chains: facts revised more often than expected
3. Pending vector syncs left in the outbox
4. Retrieval usage: how often active chunks are actually served
"""

import logging
import time
from typing import Any, Optional

from founder_memory.memory.types import MemoryChunk, MemoryType
from founder_memory.storage.hybrid import HybridStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# Days after which an active chunk of each type should be re-validated
MEMORY_TYPE_EXPIRY_DAYS: dict[MemoryType, int] = {
    MemoryType.METRIC: 30,
    MemoryType.TASK: 60,
    MemoryType.RESEARCH: 90,
    MemoryType.INVESTOR_FEEDBACK: 120,
    MemoryType.DECISION: 180,
    MemoryType.NOTE: 180,
}

TOP_RETRIEVED_LIMIT = 5


def _chain_depths(chunks: list[MemoryChunk]) -> dict[str, int]:
    """Number of versions in the chain ending at each chunk (1 = no predecessors).

    Walks successor links forward from the first versions. Chunks caught in
    a supersession cycle keep the depth reached before the cycle.
    """
    ids = {c.id for c in chunks}
    successors = {c.id: c.superseded_by for c in chunks if c.superseded_by in ids}
    waiting = {c.id: 0 for c in chunks}
    for successor_id in successors.values():
        waiting[successor_id] += 1

    depths = {c.id: 1 for c in chunks}
    ready = [chunk_id for chunk_id, count in waiting.items() if count == 0]
    while ready:
        chunk_id = ready.pop()
        successor_id = successors.get(chunk_id)
        if successor_id is None:
            continue
        depths[successor_id] = max(depths[successor_id], depths[chunk_id] + 1)
        waiting[successor_id] -= 1
        if waiting[successor_id] == 0:
            ready.append(successor_id)
    return depths


def analyze_health(
    store: HybridStore,
    project_id: str,
    max_chain_depth: int = 10,
    expiry_days: Optional[dict[MemoryType, int]] = None,
    now: Optional[float] = None,
) -> dict[str, Any]:
    """Analyze the health of a project's memory.

    Args:
        store: HybridStore instance
        project_id: Project to analyze
        max_chain_depth: Chains with more versions than this are reported
        expiry_days: Shelf life per memory type (default: MEMORY_TYPE_EXPIRY_DAYS)
        now: Reference time in epoch seconds (default: current time)

    Returns:
        Dict with ``stale``, ``deep_chains``, ``outbox``, ``usage`` and ``summary``
    """
    expiry = expiry_days or MEMORY_TYPE_EXPIRY_DAYS
    now = now if now is not None else time.time()

    issues: dict[str, Any] = {
        "stale": [],
        "deep_chains": [],
        "outbox": store.get_outbox_status(project_id),
        "usage": {
            "total_retrievals": 0,
            "never_retrieved": 0,
            "most_retrieved": [],
        },
        "summary": {
            "active_chunks": 0,
            "inactive_chunks": 0,
            "total_issues": 0,
        },
    }

    chunks = store.list_chunks(project_id, active_only=False)
    depths = _chain_depths(chunks)

    for c in chunks:
        if not c.is_active:
            issues["summary"]["inactive_chunks"] += 1
            continue
        issues["summary"]["active_chunks"] += 1
        issues["usage"]["total_retrievals"] += c.retrieval_count
        if c.retrieval_count == 0:
            issues["usage"]["never_retrieved"] += 1

        age_days = (now - c.created_at.timestamp()) / SECONDS_PER_DAY
        shelf_life = expiry.get(c.memory_type)
        if shelf_life is not None and age_days > shelf_life:
            issues["stale"].append({
                "chunk_id": c.id,
                "memory_type": c.memory_type.value,
                "content": c.content[:100],
                "age_days": int(age_days),
                "recommendation": "Re-validate, update or invalidate this memory",
            })

        if depths.get(c.id, 1) > max_chain_depth:
            issues["deep_chains"].append({
                "chunk_id": c.id,
                "versions": depths[c.id],
                "content": c.content[:100],
                "recommendation": "Fact changes often; consider tracking it as a metric series",
            })

    served = sorted(
        (c for c in chunks if c.is_active and c.retrieval_count > 0),
        key=lambda c: c.retrieval_count,
        reverse=True,
    )
    issues["usage"]["most_retrieved"] = [
        {
            "chunk_id": c.id,
            "retrieval_count": c.retrieval_count,
            "average_usefulness": c.average_usefulness,
            "content": c.content[:100],
        }
        for c in served[:TOP_RETRIEVED_LIMIT]
    ]

    issues["summary"]["total_issues"] = (
        len(issues["stale"]) + len(issues["deep_chains"]) + (1 if issues["outbox"]["pending"] else 0)
    )
    logger.info(
        f"Health for {project_id}: {issues['summary']['total_issues']} issue(s), "
        f"{issues['summary']['active_chunks']} active chunk(s)"
    )
    return issues
