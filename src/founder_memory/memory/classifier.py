"""Memory-type classification through a single constrained completion call."""

import logging
from typing import Optional

from founder_memory.completion.ollama import CompletionError, OllamaCompletionClient
from founder_memory.memory.types import MemoryType
from founder_memory.security import Operation, RateLimiter, RateLimitExceeded

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 300

CLASSIFY_PROMPT = """Classify this startup memory into exactly one category.

Categories:
- decision: a choice the founders or team made
- metric: a number the company tracks (revenue, users, burn, churn)
- investor_feedback: what an investor said or asked
- task: something that needs to be done
- research: market, competitor or customer findings
- note: anything else

Memory:
{excerpt}

Respond with only the category name."""


class Classifier:
    """Assigns a MemoryType to chunk text; never raises.

    Any failure (rate limit, transport error, unrecognized label) yields
    ``MemoryType.NOTE``.

    Args:
        completion_client: Client used for the classification call
        rate_limiter: Optional limiter charged one completion per call
    """

    def __init__(
        self,
        completion_client: OllamaCompletionClient,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._llm = completion_client
        self._limiter = rate_limiter

    async def classify(self, project_id: str, text: str) -> MemoryType:
        """Classify text from its first 300 characters."""
        excerpt = text[:EXCERPT_LENGTH].strip()
        if not excerpt:
            return MemoryType.NOTE

        try:
            if self._limiter is not None:
                self._limiter.acquire(project_id, Operation.COMPLETION)
            raw = await self._llm.complete(CLASSIFY_PROMPT.format(excerpt=excerpt), max_tokens=10)
        except (CompletionError, RateLimitExceeded) as e:
            logger.warning(f"Classification failed, using 'note': {e}")
            return MemoryType.NOTE

        label = raw.strip().lower().strip(".\"'` ")
        try:
            return MemoryType.parse(label)
        except ValueError:
            logger.warning(f"Unrecognized classification {raw!r}, using 'note'")
            return MemoryType.NOTE
