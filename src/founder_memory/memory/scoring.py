"""Confidence scoring for retrieved result sets."""

from founder_memory.memory.types import SearchResult

MEAN_WEIGHT = 0.7
TOP_WEIGHT = 0.3


def score(results: list[SearchResult]) -> float:
    """Aggregate a result set's final scores into one confidence in [0, 1].

    ``0.7 * mean + 0.3 * top``. Consistently relevant sets outscore a single
    strong hit among weak ones. An empty set scores 0.

    Example:
        >>> score([])
        0.0
    """
    if not results:
        return 0.0

    scores = [r.final_score for r in results]
    mean = sum(scores) / len(scores)
    top = max(scores)
    return max(0.0, min(1.0, MEAN_WEIGHT * mean + TOP_WEIGHT * top))
