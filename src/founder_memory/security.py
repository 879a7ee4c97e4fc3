"""Input sanitization and per-project rate limiting.

The sanitizer neutralizes known prompt-injection phrasings before text is
chunked, embedded, or shown to a completion model. The rate limiter throttles
embedding, retrieval, completion and update calls per (project, operation)
using fixed windows from the ``limits`` package.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from limits import RateLimitItem, parse
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

REDACTION_MARKER = "[REDACTED]"

MAX_CONTENT_LENGTH = 50_000
MAX_QUERY_LENGTH = 2_000

# Instruction override, role override, system-prompt extraction,
# cross-tenant probing and code-injection phrasings.
INJECTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(?:ignore|disregard|forget)\s+(?:all\s+)?(?:previous|prior|above)\s+instructions?",
        r"(?:ignore|disregard|forget)\s+all\s+instructions?",
        r"what\s+is\s+your\s+system\s+prompt",
        r"show\s+me\s+your\s+(?:instructions|system\s+prompt)",
        r"reveal\s+your\s+(?:instructions|prompt|rules)",
        r"you\s+are\s+now\s+(?:DAN|evil|unrestricted)",
        r"pretend\s+you\s+are\s+(?:not\s+)?an?\s+(?:AI|assistant)",
        r"act\s+as\s+if\s+you\s+have\s+no\s+(?:rules|restrictions)",
        r"output\s+(?:all|every)\s+(?:data|memory|memories|information)",
        r"list\s+all\s+(?:users|projects|memories)",
        r"show\s+me\s+(?:other|all)\s+projects?",
        r"access\s+(?:another|other|different)\s+projects?",
        r"what\s+about\s+project\s+id",
        r"change\s+project\s+to",
        r"base64\s*:",
        r"eval\s*\(",
        r"<script\b[^>]*>",
        r"\$\{[^}]*\}",
    )
]

CONTROL_CHARACTERS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# Reported but left in place: founders legitimately write about these.
SUSPICIOUS_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"api[\s_-]?key",
        r"password",
        r"secret",
        r"\btoken\b",
        r"credential",
        r"private[\s_-]?key",
    )
]


@dataclass
class ScanReport:
    """Outcome of scanning one piece of text."""
    text: str
    redactions: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.redactions == 0


def check_length(text: str, max_length: int = MAX_CONTENT_LENGTH, what: str = "Content") -> str:
    """Reject text longer than ``max_length`` characters.

    Raises:
        ValueError: If the text is too long
    """
    if len(text) > max_length:
        raise ValueError(f"{what} too long: {len(text)} characters (max {max_length})")
    return text


def scan(text: str) -> ScanReport:
    """Redact injection patterns and report credential-like phrases.

    Control characters other than tab and newlines are dropped. Never raises;
    non-string input is coerced to an empty string. Length is not enforced
    here, see check_length.

    Args:
        text: Raw input

    Returns:
        ScanReport with the sanitized text
    """
    if not isinstance(text, str):
        return ScanReport(text="")

    sanitized = CONTROL_CHARACTERS.sub("", text)

    redactions = 0
    for pattern in INJECTION_PATTERNS:
        sanitized, count = pattern.subn(REDACTION_MARKER, sanitized)
        redactions += count

    warnings = [
        f"possible sensitive data: {pattern.pattern}"
        for pattern in SUSPICIOUS_PATTERNS
        if pattern.search(sanitized)
    ]

    if redactions:
        logger.warning(f"Sanitizer redacted {redactions} injection pattern(s)")

    return ScanReport(
        text=sanitized,
        redactions=redactions,
        warnings=warnings,
    )


def sanitize(text: str) -> str:
    """Return text with known injection phrasings replaced by the redaction marker."""
    return scan(text).text


class Operation(Enum):
    """Operation classes with independent quotas."""
    EMBEDDING = "embedding"
    RETRIEVAL = "retrieval"
    COMPLETION = "completion"
    UPDATE = "update"


class RateLimitExceeded(Exception):
    """Raised when a project exhausts its quota for an operation class."""

    def __init__(self, project_id: str, operation: Operation, reset_at: float):
        self.project_id = project_id
        self.operation = operation
        self.reset_at = reset_at
        super().__init__(
            f"Rate limit exceeded for {operation.value} in project {project_id}; "
            f"resets in {max(0.0, reset_at - time.time()):.0f}s"
        )


class RateLimiter:
    """Fixed-window rate limiter keyed by (project_id, operation).

    Counters live in a ``limits`` storage backend (in-process by default).
    Quotas use the ``limits`` notation, e.g. ``"100/minute"`` or
    ``"100 per hour"``.

    Args:
        quotas: Quota per operation class; operations without a quota are
            unlimited
        storage_uri: ``limits`` storage backend

    Example:
        >>> limiter = RateLimiter({Operation.RETRIEVAL: "2/minute"})
        >>> limiter.acquire("acme", Operation.RETRIEVAL)
        >>> limiter.acquire("acme", Operation.RETRIEVAL)
        >>> limiter.acquire("acme", Operation.RETRIEVAL)
        Traceback (most recent call last):
        ...
        RateLimitExceeded: ...
    """

    def __init__(
        self,
        quotas: dict[Operation, Union[str, RateLimitItem]],
        storage_uri: str = "memory://",
    ):
        self.quotas: dict[Operation, RateLimitItem] = {
            operation: parse(quota) if isinstance(quota, str) else quota
            for operation, quota in quotas.items()
        }
        self._storage = storage_from_string(storage_uri)
        self._limiter = FixedWindowRateLimiter(self._storage)

    @classmethod
    def from_settings(cls, settings) -> "RateLimiter":
        """Build a limiter from MemorySettings quotas."""
        return cls(
            {
                Operation.EMBEDDING: f"{settings.embeddings_per_minute}/minute",
                Operation.RETRIEVAL: f"{settings.retrievals_per_minute}/minute",
                Operation.COMPLETION: f"{settings.completions_per_minute}/minute",
                Operation.UPDATE: f"{settings.updates_per_hour}/hour",
            }
        )

    def acquire(self, project_id: str, operation: Operation, cost: int = 1) -> None:
        """Consume ``cost`` calls from the project's quota.

        A rejected call consumes nothing.

        Raises:
            RateLimitExceeded: If the quota for the current window cannot
                cover ``cost``
        """
        item = self.quotas.get(operation)
        if item is None:
            return
        if not self._limiter.test(item, project_id, operation.value, cost=cost) or not self._limiter.hit(
            item, project_id, operation.value, cost=cost
        ):
            stats = self._limiter.get_window_stats(item, project_id, operation.value)
            raise RateLimitExceeded(project_id, operation, stats.reset_time)

    def try_acquire(self, project_id: str, operation: Operation, cost: int = 1) -> bool:
        """Like acquire, but returns False instead of raising."""
        try:
            self.acquire(project_id, operation, cost)
        except RateLimitExceeded:
            return False
        return True

    def status(self, project_id: str) -> dict[str, dict[str, Optional[float]]]:
        """Remaining calls and reset time per operation for one project."""
        report: dict[str, dict[str, Optional[float]]] = {}
        for operation, item in self.quotas.items():
            stats = self._limiter.get_window_stats(item, project_id, operation.value)
            report[operation.value] = {
                "limit": item.amount,
                "remaining": stats.remaining,
                "reset_at": stats.reset_time,
            }
        return report

    def reset(self, project_id: Optional[str] = None) -> None:
        """Drop counters for one project, or for all projects."""
        if project_id is None:
            self._storage.reset()
            return
        for operation, item in self.quotas.items():
            self._limiter.clear(item, project_id, operation.value)
