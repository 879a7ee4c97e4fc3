"""Context compression for retrieved chunks."""

import logging
from typing import Optional

from founder_memory.completion.ollama import CompletionError, OllamaCompletionClient
from founder_memory.memory.types import SearchResult
from founder_memory.security import Operation, RateLimiter, RateLimitExceeded

logger = logging.getLogger(__name__)

COMPRESS_PROMPT = """You are preparing context for an assistant advising a startup founder.
Compress the memories below into one concise briefing.

Rules:
- Keep every concrete fact: numbers, dates, names, amounts
- Group related facts by topic
- Drop repetition and filler
- Do not add facts that are not in the memories

Memories:
{memories}

Briefing:"""


def concatenate(results: list[SearchResult]) -> str:
    """Plain ``[TYPE: x] content`` block, one line per result."""
    return "\n\n".join(f"[TYPE: {r.memory_type.value}] {r.content}" for r in results)


class Compressor:
    """Summarizes retrieved chunks into one context block.

    Falls back to ``concatenate`` on any completion failure, so the output is
    never empty for a non-empty result set.

    Args:
        completion_client: Client used for the summary call
        rate_limiter: Optional limiter charged one completion per call
    """

    def __init__(
        self,
        completion_client: OllamaCompletionClient,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._llm = completion_client
        self._limiter = rate_limiter

    async def compress(self, project_id: str, results: list[SearchResult]) -> tuple[str, bool]:
        """Compress results into context text.

        Returns:
            (text, True) when the summary call succeeded, otherwise
            (concatenated text, False)
        """
        if not results:
            return "", False

        fallback = concatenate(results)
        try:
            if self._limiter is not None:
                self._limiter.acquire(project_id, Operation.COMPLETION)
            summary = await self._llm.complete(COMPRESS_PROMPT.format(memories=fallback))
        except (CompletionError, RateLimitExceeded) as e:
            logger.warning(f"Compression failed, returning raw context: {e}")
            return fallback, False

        return summary, True
