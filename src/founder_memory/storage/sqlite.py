"""SQLite storage layer for chunks, keyword search, sync outbox and audit log.

This module is the source of truth for memory chunks:
- Chunk rows (content, hash, type, weight, activity, supersession link)
- FTS5 full-text index kept in sync by triggers
- Outbox table for ChromaDB sync
- Append-only audit log
- Schema versioning and migrations

Every chunk read or write takes ``project_id`` and filters on it.
"""

import json
import logging
import re
import secrets
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from founder_memory.memory.types import (
    ChunkMetadata,
    MemoryChunk,
    MemoryType,
    validate_project_id,
)

logger = logging.getLogger(__name__)

# Schema version migrations
# Each migration has a description and up SQL (can be a list of statements)
MIGRATIONS: dict[int, dict[str, Any]] = {
    1: {
        "description": "Add audit_log table",
        "up": [
            """CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                actor TEXT,
                operation TEXT NOT NULL,
                status TEXT NOT NULL,
                input_hash TEXT,
                result_size INTEGER,
                score REAL,
                error TEXT,
                details TEXT,
                created_at REAL NOT NULL
            )""",
            "CREATE INDEX IF NOT EXISTS idx_audit_project ON audit_log(project_id, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_audit_operation ON audit_log(operation)",
        ],
    },
    2: {
        "description": "Index supersession links for history traversal",
        "up": [
            "CREATE INDEX IF NOT EXISTS idx_chunks_superseded_by ON memory_chunks(superseded_by)",
        ],
    },
    3: {
        "description": "Track retrieval usage per chunk",
        "up": [
            "ALTER TABLE memory_chunks ADD COLUMN retrieval_count INTEGER NOT NULL DEFAULT 0",
            "ALTER TABLE memory_chunks ADD COLUMN last_retrieved_at REAL",
            "ALTER TABLE memory_chunks ADD COLUMN average_usefulness REAL",
        ],
    },
}

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER on older builds
_MAX_PARAMS = 900

_FTS_TOKEN = re.compile(r"\w+", re.UNICODE)


class SQLiteStoreError(Exception):
    """Custom exception for SQLite storage-related errors."""

    pass


def _require_project(project_id: str) -> str:
    return validate_project_id(project_id)


def _batched(items: list[Any], size: int = _MAX_PARAMS) -> Iterable[list[Any]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def build_fts_query(text: str, max_terms: int = 32) -> Optional[str]:
    """Turn free text into an FTS5 OR-query of quoted terms.

    Returns None when the text has no searchable terms.
    """
    terms: list[str] = []
    for token in _FTS_TOKEN.findall(text.lower()):
        if len(token) < 2 or token in terms:
            continue
        terms.append(token)
        if len(terms) >= max_terms:
            break
    if not terms:
        return None
    return " OR ".join(f'"{t}"' for t in terms)


class SQLiteStore:
    """SQLite storage for memory chunks, FTS, outbox and audit entries.

    Args:
        db_path: Path to SQLite database file.
                 Defaults to ~/.founder_memory/memory.db
        ephemeral: If True, use in-memory storage for testing (default: False)
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        ephemeral: bool = False,
    ):
        self.ephemeral = ephemeral

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".founder_memory" / "memory.db"

        try:
            if ephemeral:
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            else:
                if self.db_path is not None:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)

            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")

            self._init_schema()

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to initialize SQLite storage: {e}") from e

    def _init_schema(self) -> None:
        """Create chunk, outbox and FTS tables, then run migrations.

        Raises:
            SQLiteStoreError: If schema initialization fails
        """
        try:
            cursor = self._conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memory_chunks (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    memory_type TEXT NOT NULL DEFAULT 'note',
                    embedding TEXT NOT NULL,
                    founder_weight REAL NOT NULL DEFAULT 1.0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    superseded_by TEXT,
                    metadata TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_chunks_project_active
                ON memory_chunks(project_id, is_active)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_chunks_project_type
                ON memory_chunks(project_id, memory_type)
            """)
            # Content is unique among a project's active chunks only, so a
            # superseded version can be restated later.
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_chunks_active_hash
                ON memory_chunks(project_id, content_hash) WHERE is_active = 1
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chunk_id TEXT NOT NULL,
                    project_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    processed_at REAL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    error_message TEXT,
                    FOREIGN KEY (chunk_id) REFERENCES memory_chunks(id)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_outbox_status
                ON outbox(status)
            """)

            # FTS5 tables don't support IF NOT EXISTS reliably; check first
            cursor.execute("""
                SELECT name FROM sqlite_master
                WHERE type='table' AND name='memory_chunks_fts'
            """)
            if cursor.fetchone() is None:
                cursor.execute("""
                    CREATE VIRTUAL TABLE memory_chunks_fts USING fts5(
                        id UNINDEXED,
                        content,
                        content='memory_chunks',
                        content_rowid='rowid'
                    )
                """)
                cursor.execute("""
                    CREATE TRIGGER IF NOT EXISTS memory_chunks_ai AFTER INSERT ON memory_chunks BEGIN
                        INSERT INTO memory_chunks_fts(rowid, id, content)
                        VALUES (NEW.rowid, NEW.id, NEW.content);
                    END
                """)
                cursor.execute("""
                    CREATE TRIGGER IF NOT EXISTS memory_chunks_ad AFTER DELETE ON memory_chunks BEGIN
                        INSERT INTO memory_chunks_fts(memory_chunks_fts, rowid, id, content)
                        VALUES ('delete', OLD.rowid, OLD.id, OLD.content);
                    END
                """)
                cursor.execute("""
                    CREATE TRIGGER IF NOT EXISTS memory_chunks_au
                    AFTER UPDATE OF content ON memory_chunks BEGIN
                        INSERT INTO memory_chunks_fts(memory_chunks_fts, rowid, id, content)
                        VALUES ('delete', OLD.rowid, OLD.id, OLD.content);
                        INSERT INTO memory_chunks_fts(rowid, id, content)
                        VALUES (NEW.rowid, NEW.id, NEW.content);
                    END
                """)

            self._conn.commit()

            self._run_migrations()

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to initialize schema: {e}") from e

    def _get_schema_version(self) -> int:
        cursor = self._conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at REAL NOT NULL,
                description TEXT
            )
        """)
        self._conn.commit()
        cursor.execute("SELECT MAX(version) FROM schema_version")
        result = cursor.fetchone()
        return result[0] if result and result[0] is not None else 0

    def _run_migrations(self) -> None:
        """Apply pending migrations in order, one transaction each.

        Raises:
            SQLiteStoreError: If a migration fails
        """
        current_version = self._get_schema_version()
        max_version = max(MIGRATIONS.keys()) if MIGRATIONS else 0

        if current_version >= max_version:
            return

        logger.info(f"Running migrations from v{current_version} to v{max_version}")

        for version in range(current_version + 1, max_version + 1):
            if version not in MIGRATIONS:
                continue

            migration = MIGRATIONS[version]
            description = migration.get("description", f"Migration {version}")
            up_sql = migration.get("up", [])
            if isinstance(up_sql, str):
                up_sql = [up_sql]

            try:
                cursor = self._conn.cursor()
                for sql in up_sql:
                    cursor.execute(sql)
                cursor.execute(
                    "INSERT INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
                    (version, time.time(), description),
                )
                self._conn.commit()
                logger.info(f"Applied migration v{version}: {description}")

            except sqlite3.Error as e:
                self._conn.rollback()
                raise SQLiteStoreError(
                    f"Migration v{version} failed ({description}): {e}"
                ) from e

    @staticmethod
    def generate_id() -> str:
        """Unique, time-sortable chunk id: chk_<microseconds>_<random>."""
        timestamp = int(time.time() * 1_000_000)
        return f"chk_{timestamp}_{secrets.token_hex(4)}"

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row, with_embedding: bool = True) -> MemoryChunk:
        return MemoryChunk(
            id=row["id"],
            project_id=row["project_id"],
            content=row["content"],
            content_hash=row["content_hash"],
            memory_type=MemoryType(row["memory_type"]),
            embedding=json.loads(row["embedding"]) if with_embedding else [],
            founder_weight=row["founder_weight"],
            is_active=bool(row["is_active"]),
            superseded_by=row["superseded_by"],
            metadata=ChunkMetadata.from_dict(
                json.loads(row["metadata"]) if row["metadata"] else None
            ),
            created_at=datetime.fromtimestamp(row["created_at"]),
            retrieval_count=row["retrieval_count"],
            last_retrieved_at=(
                datetime.fromtimestamp(row["last_retrieved_at"]) if row["last_retrieved_at"] else None
            ),
            average_usefulness=row["average_usefulness"],
        )

    # =========================================================================
    # Chunk writes
    # =========================================================================

    def insert_chunks(self, chunks: list[MemoryChunk]) -> list[str]:
        """Insert chunks and queue them for vector sync, in one transaction.

        A chunk whose hash is already held by an active chunk of the same
        project is skipped silently (concurrent ingestions of identical
        content collapse to one row).

        Args:
            chunks: Chunks to insert; all must carry an embedding

        Returns:
            Ids of the chunks actually inserted, in input order

        Raises:
            SQLiteStoreError: If the transaction fails
            ValueError: If a chunk has no embedding
        """
        if not chunks:
            return []

        now = time.time()
        inserted: list[str] = []

        try:
            cursor = self._conn.cursor()
            for c in chunks:
                _require_project(c.project_id)
                if not c.embedding:
                    raise ValueError(f"Chunk {c.id} has no embedding")

                cursor.execute(
                    """
                    INSERT OR IGNORE INTO memory_chunks (
                        id, project_id, content, content_hash, memory_type, embedding,
                        founder_weight, is_active, superseded_by, metadata,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        c.id,
                        c.project_id,
                        c.content,
                        c.content_hash,
                        c.memory_type.value,
                        json.dumps(c.embedding),
                        c.founder_weight,
                        1 if c.is_active else 0,
                        c.superseded_by,
                        json.dumps(c.metadata.to_dict()),
                        c.created_at.timestamp(),
                        now,
                    ),
                )
                if cursor.rowcount == 0:
                    logger.debug(f"Skipped duplicate chunk {c.content_hash[:12]} in {c.project_id}")
                    continue

                cursor.execute(
                    """
                    INSERT INTO outbox (chunk_id, project_id, operation, created_at)
                    VALUES (?, ?, 'upsert', ?)
                    """,
                    (c.id, c.project_id, now),
                )
                inserted.append(c.id)

            self._conn.commit()
            return inserted

        except ValueError:
            self._conn.rollback()
            raise
        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to insert chunks: {e}") from e

    def archive(
        self,
        project_id: str,
        chunk_id: str,
        superseded_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Mark a chunk inactive, optionally linking it to its successor.

        The successor must exist in the same project. A chunk that is already
        inactive is left untouched.

        Args:
            project_id: Owning project
            chunk_id: Chunk to archive
            superseded_by: Id of the chunk that replaces it
            reason: Why it was archived, stored in metadata

        Returns:
            True if the chunk was archived, False if missing or already inactive

        Raises:
            SQLiteStoreError: If the update fails
            ValueError: If the successor is not a chunk of this project
        """
        _require_project(project_id)
        now = time.time()

        try:
            cursor = self._conn.cursor()

            if superseded_by is not None:
                cursor.execute(
                    "SELECT 1 FROM memory_chunks WHERE id = ? AND project_id = ?",
                    (superseded_by, project_id),
                )
                if cursor.fetchone() is None:
                    raise ValueError(
                        f"Successor {superseded_by} does not exist in project {project_id}"
                    )

            cursor.execute(
                "SELECT metadata FROM memory_chunks WHERE id = ? AND project_id = ? AND is_active = 1",
                (chunk_id, project_id),
            )
            row = cursor.fetchone()
            if row is None:
                return False

            metadata = json.loads(row["metadata"]) if row["metadata"] else {}
            if reason:
                metadata["reason"] = reason

            cursor.execute(
                """
                UPDATE memory_chunks
                SET is_active = 0, superseded_by = ?, metadata = ?, updated_at = ?
                WHERE id = ? AND project_id = ? AND is_active = 1
                """,
                (superseded_by, json.dumps(metadata), now, chunk_id, project_id),
            )
            cursor.execute(
                """
                INSERT INTO outbox (chunk_id, project_id, operation, created_at)
                VALUES (?, ?, 'archive', ?)
                """,
                (chunk_id, project_id, now),
            )
            self._conn.commit()
            return True

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to archive chunk: {e}") from e

    def record_retrieval(
        self,
        project_id: str,
        chunk_ids: list[str],
        usefulness: Optional[dict[str, float]] = None,
    ) -> int:
        """Count a retrieval of each chunk and fold in optional usefulness scores.

        Args:
            project_id: Owning project
            chunk_ids: Chunks returned by the retrieval
            usefulness: Optional score in [0, 1] per chunk id

        Returns:
            Number of chunks updated

        Raises:
            SQLiteStoreError: If the update fails
        """
        _require_project(project_id)
        if not chunk_ids:
            return 0
        usefulness = usefulness or {}
        now = time.time()

        try:
            cursor = self._conn.cursor()
            updated = 0
            for chunk_id in chunk_ids:
                cursor.execute(
                    """
                    UPDATE memory_chunks
                    SET retrieval_count = retrieval_count + 1,
                        last_retrieved_at = ?,
                        average_usefulness = CASE
                            WHEN ? IS NULL THEN average_usefulness
                            WHEN average_usefulness IS NULL THEN ?
                            ELSE (average_usefulness * retrieval_count + ?) / (retrieval_count + 1)
                        END
                    WHERE id = ? AND project_id = ?
                    """,
                    (now, *([usefulness.get(chunk_id)] * 3), chunk_id, project_id),
                )
                updated += cursor.rowcount
            self._conn.commit()
            return updated

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to record retrieval: {e}") from e

    # =========================================================================
    # Chunk reads
    # =========================================================================

    def existing_hashes(self, project_id: str, hashes: list[str]) -> set[str]:
        """Return which of ``hashes`` belong to active chunks of the project.

        One query per 900 hashes, not one per hash.

        Raises:
            SQLiteStoreError: If the lookup fails
        """
        _require_project(project_id)
        unique = list(dict.fromkeys(hashes))
        found: set[str] = set()
        if not unique:
            return found

        try:
            cursor = self._conn.cursor()
            for batch in _batched(unique):
                placeholders = ",".join("?" * len(batch))
                cursor.execute(
                    f"""
                    SELECT content_hash FROM memory_chunks
                    WHERE project_id = ? AND is_active = 1
                      AND content_hash IN ({placeholders})
                    """,
                    [project_id, *batch],
                )
                found.update(row["content_hash"] for row in cursor.fetchall())
            return found

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to check content hashes: {e}") from e

    def get_chunk(self, project_id: str, chunk_id: str) -> Optional[MemoryChunk]:
        """Get one chunk of the project by id, active or not.

        Raises:
            SQLiteStoreError: If the read fails
        """
        chunks = self.get_chunks(project_id, [chunk_id])
        return chunks.get(chunk_id)

    def get_chunks(
        self,
        project_id: str,
        chunk_ids: list[str],
        active_only: bool = False,
    ) -> dict[str, MemoryChunk]:
        """Get chunks of the project by id; ids from other projects are absent.

        Raises:
            SQLiteStoreError: If the read fails
        """
        _require_project(project_id)
        result: dict[str, MemoryChunk] = {}
        if not chunk_ids:
            return result

        try:
            cursor = self._conn.cursor()
            for batch in _batched(list(dict.fromkeys(chunk_ids))):
                placeholders = ",".join("?" * len(batch))
                sql = f"""
                    SELECT * FROM memory_chunks
                    WHERE project_id = ? AND id IN ({placeholders})
                """
                if active_only:
                    sql += " AND is_active = 1"
                cursor.execute(sql, [project_id, *batch])
                for row in cursor.fetchall():
                    result[row["id"]] = self._row_to_chunk(row)
            return result

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get chunks: {e}") from e

    def get_predecessors(self, project_id: str, chunk_id: str) -> list[MemoryChunk]:
        """Chunks of the project whose ``superseded_by`` points at chunk_id.

        Raises:
            SQLiteStoreError: If the read fails
        """
        _require_project(project_id)
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT * FROM memory_chunks
                WHERE project_id = ? AND superseded_by = ?
                ORDER BY created_at
                """,
                (project_id, chunk_id),
            )
            return [self._row_to_chunk(row, with_embedding=False) for row in cursor.fetchall()]

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get predecessors: {e}") from e

    def list_chunks(
        self,
        project_id: str,
        active_only: bool = True,
        memory_type: Optional[MemoryType] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryChunk]:
        """List a project's chunks, newest first, without embeddings.

        Raises:
            SQLiteStoreError: If the read fails
        """
        _require_project(project_id)
        sql = "SELECT * FROM memory_chunks WHERE project_id = ?"
        params: list[Any] = [project_id]
        if active_only:
            sql += " AND is_active = 1"
        if memory_type is not None:
            sql += " AND memory_type = ?"
            params.append(memory_type.value)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            cursor = self._conn.cursor()
            cursor.execute(sql, params)
            return [self._row_to_chunk(row, with_embedding=False) for row in cursor.fetchall()]

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to list chunks: {e}") from e

    def count_chunks(self, project_id: str, active_only: bool = True) -> int:
        """Number of chunks in the project.

        Raises:
            SQLiteStoreError: If the count fails
        """
        _require_project(project_id)
        sql = "SELECT COUNT(*) FROM memory_chunks WHERE project_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        try:
            cursor = self._conn.cursor()
            cursor.execute(sql, (project_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to count chunks: {e}") from e

    def keyword_scores(
        self,
        project_id: str,
        query_text: str,
        chunk_ids: list[str],
    ) -> dict[str, float]:
        """BM25 relevance of query_text for the given active chunks.

        Returns raw FTS5 bm25 values (negative; more negative is more
        relevant). Chunks with no matching term are absent.

        Raises:
            SQLiteStoreError: If the search fails
        """
        _require_project(project_id)
        fts_query = build_fts_query(query_text)
        if fts_query is None or not chunk_ids:
            return {}

        scores: dict[str, float] = {}
        try:
            cursor = self._conn.cursor()
            for batch in _batched(list(dict.fromkeys(chunk_ids))):
                placeholders = ",".join("?" * len(batch))
                cursor.execute(
                    f"""
                    SELECT m.id, bm25(memory_chunks_fts) AS rank
                    FROM memory_chunks_fts
                    JOIN memory_chunks m ON m.rowid = memory_chunks_fts.rowid
                    WHERE memory_chunks_fts MATCH ?
                      AND m.project_id = ? AND m.is_active = 1
                      AND m.id IN ({placeholders})
                    """,
                    [fts_query, project_id, *batch],
                )
                for row in cursor.fetchall():
                    scores[row["id"]] = float(row["rank"])
            return scores

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to score keywords: {e}") from e

    # =========================================================================
    # Outbox Operations
    # =========================================================================

    def get_pending_outbox(self, limit: int = 100) -> list[dict[str, Any]]:
        """Get pending outbox entries, oldest first.

        Raises:
            SQLiteStoreError: If the read fails
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT id, chunk_id, project_id, operation, created_at
                FROM outbox
                WHERE status = 'pending'
                ORDER BY id
                LIMIT ?
                """,
                (limit,),
            )
            return [dict(row) for row in cursor.fetchall()]

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get pending outbox: {e}") from e

    def count_pending_outbox(self, project_id: Optional[str] = None) -> int:
        """Pending outbox entries, optionally for one project.

        Raises:
            SQLiteStoreError: If the count fails
        """
        sql = "SELECT COUNT(*) FROM outbox WHERE status = 'pending'"
        params: list[Any] = []
        if project_id is not None:
            sql += " AND project_id = ?"
            params.append(_require_project(project_id))
        try:
            cursor = self._conn.cursor()
            cursor.execute(sql, params)
            result = cursor.fetchone()
            return int(result[0]) if result else 0

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to count outbox: {e}") from e

    def mark_outbox_processed(
        self,
        chunk_ids: list[str],
        error_message: Optional[str] = None,
    ) -> int:
        """Mark pending outbox entries for the given chunks.

        On success entries become ``processed``; with an error message they
        stay ``pending`` and record the error for the next attempt.

        Returns:
            Number of entries updated

        Raises:
            SQLiteStoreError: If the update fails
        """
        if not chunk_ids:
            return 0
        try:
            cursor = self._conn.cursor()
            updated = 0
            for batch in _batched(list(dict.fromkeys(chunk_ids))):
                placeholders = ",".join("?" * len(batch))
                if error_message is None:
                    cursor.execute(
                        f"""
                        UPDATE outbox SET status = 'processed', processed_at = ?, error_message = NULL
                        WHERE status = 'pending' AND chunk_id IN ({placeholders})
                        """,
                        [time.time(), *batch],
                    )
                else:
                    cursor.execute(
                        f"""
                        UPDATE outbox SET error_message = ?
                        WHERE status = 'pending' AND chunk_id IN ({placeholders})
                        """,
                        [error_message, *batch],
                    )
                updated += cursor.rowcount
            self._conn.commit()
            return updated

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to mark outbox processed: {e}") from e

    # =========================================================================
    # Audit Log
    # =========================================================================

    def add_audit_entry(
        self,
        project_id: str,
        operation: str,
        status: str,
        actor: Optional[str] = None,
        input_hash: Optional[str] = None,
        result_size: Optional[int] = None,
        score: Optional[float] = None,
        error: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> int:
        """Append one audit entry.

        Returns:
            The new entry's id

        Raises:
            SQLiteStoreError: If the insert fails
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT INTO audit_log (
                    project_id, actor, operation, status, input_hash,
                    result_size, score, error, details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    actor,
                    operation,
                    status,
                    input_hash,
                    result_size,
                    score,
                    error,
                    json.dumps(details) if details else None,
                    time.time(),
                ),
            )
            self._conn.commit()
            return int(cursor.lastrowid or 0)

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to write audit entry: {e}") from e

    def get_audit_entries(
        self,
        project_id: str,
        operation: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Audit entries for a project, newest first.

        Raises:
            SQLiteStoreError: If the read fails
        """
        sql = "SELECT * FROM audit_log WHERE project_id = ?"
        params: list[Any] = [project_id]
        if operation is not None:
            sql += " AND operation = ?"
            params.append(operation)
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        try:
            cursor = self._conn.cursor()
            cursor.execute(sql, params)
            entries = []
            for row in cursor.fetchall():
                entry = dict(row)
                entry["details"] = json.loads(entry["details"]) if entry["details"] else None
                entries.append(entry)
            return entries

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to read audit log: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
