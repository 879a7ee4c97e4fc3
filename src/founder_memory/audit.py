"""Append-only audit log of ingestion, retrieval and update decisions.

Entries are stored in the SQLite ``audit_log`` table. Inputs are recorded as
a SHA-256 hash, never as full content. Failed and rate-limited operations are
recorded too.
"""

import hashlib
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from founder_memory.security import RateLimitExceeded
from founder_memory.storage.hybrid import HybridStore, HybridStoreError

logger = logging.getLogger(__name__)

SUSPICIOUS_RETRIEVALS = 50
SUSPICIOUS_WINDOW_SECONDS = 300


def input_hash(text: str) -> str:
    """SHA-256 of an operation's input, for the audit trail."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class AuditEntry:
    """Mutable record filled in while an audited operation runs."""
    project_id: str
    operation: str
    actor: Optional[str] = None
    input_hash: Optional[str] = None
    result_size: Optional[int] = None
    score: Optional[float] = None
    details: dict[str, Any] = field(default_factory=dict)


class AuditLog:
    """Writes and queries audit entries through the store adapter.

    Args:
        store: HybridStore whose SQLite database holds the log
    """

    def __init__(self, store: HybridStore):
        self._store = store

    def record(self, entry: AuditEntry, status: str = "ok", error: Optional[str] = None) -> None:
        """Append an entry. A failed write is logged, never raised."""
        try:
            self._store.add_audit_entry(
                entry.project_id,
                entry.operation,
                status,
                actor=entry.actor,
                input_hash=entry.input_hash,
                result_size=entry.result_size,
                score=entry.score,
                error=error,
                details=entry.details or None,
            )
        except HybridStoreError as e:
            logger.error(f"Audit write failed for {entry.operation} in {entry.project_id}: {e}")

    @contextmanager
    def track(
        self,
        project_id: str,
        operation: str,
        actor: Optional[str] = None,
        input_text: Optional[str] = None,
    ) -> Iterator[AuditEntry]:
        """Audit the enclosed block.

        The yielded entry can be filled with result size and score. The entry
        is written when the block exits, with status ``ok``, ``rate_limited``
        or ``error``; exceptions propagate unchanged.

        Example:
            >>> with audit.track("acme", "retrieve", input_text=query) as entry:
            ...     result = ...
            ...     entry.result_size = len(result.results)
        """
        entry = AuditEntry(
            project_id=project_id,
            operation=operation,
            actor=actor,
            input_hash=input_hash(input_text) if input_text is not None else None,
        )
        try:
            yield entry
        except RateLimitExceeded as e:
            self.record(entry, status="rate_limited", error=str(e))
            raise
        except Exception as e:
            self.record(entry, status="error", error=f"{type(e).__name__}: {e}")
            raise
        else:
            self.record(entry)

    def query(
        self,
        project_id: str,
        operation: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Entries for a project, newest first.

        Raises:
            HybridStoreError: If the log cannot be read
        """
        return self._store.get_audit_entries(
            project_id, operation=operation, since=since, limit=limit
        )

    def suspicious_activity(self, project_id: str) -> list[str]:
        """Warnings about unusual access patterns for a project."""
        since = time.time() - SUSPICIOUS_WINDOW_SECONDS
        entries = self.query(project_id, since=since, limit=1000)

        warnings: list[str] = []
        retrievals = sum(1 for e in entries if e["operation"] == "retrieve")
        if retrievals > SUSPICIOUS_RETRIEVALS:
            warnings.append(
                f"{retrievals} retrievals in the last {SUSPICIOUS_WINDOW_SECONDS // 60} minutes"
            )
        limited = sum(1 for e in entries if e["status"] == "rate_limited")
        if limited:
            warnings.append(f"{limited} rate-limited call(s) in the last {SUSPICIOUS_WINDOW_SECONDS // 60} minutes")
        return warnings
