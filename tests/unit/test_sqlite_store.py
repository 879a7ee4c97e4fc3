"""Unit tests for SQLiteStore - chunks, FTS, outbox and audit log."""

import time
from datetime import datetime

import pytest

from conftest import NEAR, make_chunk
from founder_memory.memory.types import MemoryType
from founder_memory.storage.sqlite import MIGRATIONS, SQLiteStore, build_fts_query


@pytest.fixture
def sqlite():
    store = SQLiteStore(ephemeral=True)
    yield store
    store.close()


class TestSchema:
    """Tests for schema creation and migrations."""

    def test_migrations_applied(self, sqlite):
        assert sqlite._get_schema_version() == max(MIGRATIONS)

    def test_reopen_is_idempotent(self, tmp_path):
        db_path = tmp_path / "memory.db"
        SQLiteStore(db_path=db_path).close()
        store = SQLiteStore(db_path=db_path)
        assert store._get_schema_version() == max(MIGRATIONS)
        store.close()

    def test_generate_id_format(self):
        first, second = SQLiteStore.generate_id(), SQLiteStore.generate_id()
        assert first.startswith("chk_")
        assert first != second


class TestInsertChunks:
    """Tests for chunk insertion and duplicate collapsing."""

    def test_insert_and_get(self, sqlite):
        chunk = make_chunk("acme", "MRR is $50k", NEAR, MemoryType.METRIC)
        assert sqlite.insert_chunks([chunk]) == [chunk.id]

        stored = sqlite.get_chunk("acme", chunk.id)
        assert stored.content == "MRR is $50k"
        assert stored.memory_type is MemoryType.METRIC
        assert stored.embedding == NEAR
        assert stored.is_active

    def test_duplicate_active_content_ignored(self, sqlite):
        first = make_chunk("acme", "MRR is $50k", NEAR)
        second = make_chunk("acme", "mrr is $50K ", NEAR)
        sqlite.insert_chunks([first])

        assert sqlite.insert_chunks([second]) == []
        assert sqlite.count_chunks("acme") == 1

    def test_same_content_other_project_allowed(self, sqlite):
        sqlite.insert_chunks([make_chunk("acme", "MRR is $50k", NEAR)])
        assert len(sqlite.insert_chunks([make_chunk("globex", "MRR is $50k", NEAR)])) == 1

    def test_insert_queues_outbox(self, sqlite):
        sqlite.insert_chunks([make_chunk("acme", "one", NEAR), make_chunk("acme", "two", NEAR)])
        pending = sqlite.get_pending_outbox()
        assert [e["operation"] for e in pending] == ["upsert", "upsert"]
        assert sqlite.count_pending_outbox("acme") == 2
        assert sqlite.count_pending_outbox("globex") == 0

    def test_missing_embedding_rejected(self, sqlite):
        chunk = make_chunk("acme", "no vector", [])
        with pytest.raises(ValueError, match="no embedding"):
            sqlite.insert_chunks([chunk])


class TestArchive:
    """Tests for archiving and supersession links."""

    def test_archive_with_successor(self, sqlite):
        old = make_chunk("acme", "MRR is $50k", NEAR)
        new = make_chunk("acme", "MRR is $60k", NEAR)
        sqlite.insert_chunks([old, new])

        assert sqlite.archive("acme", old.id, superseded_by=new.id, reason="newer figure")

        stored = sqlite.get_chunk("acme", old.id)
        assert not stored.is_active
        assert stored.superseded_by == new.id
        assert stored.metadata.reason == "newer figure"
        assert [c.id for c in sqlite.get_predecessors("acme", new.id)] == [old.id]

    def test_archive_twice_returns_false(self, sqlite):
        chunk = make_chunk("acme", "stale", NEAR)
        sqlite.insert_chunks([chunk])
        assert sqlite.archive("acme", chunk.id)
        assert not sqlite.archive("acme", chunk.id)

    def test_successor_must_be_same_project(self, sqlite):
        old = make_chunk("acme", "MRR is $50k", NEAR)
        foreign = make_chunk("globex", "MRR is $60k", NEAR)
        sqlite.insert_chunks([old, foreign])

        with pytest.raises(ValueError, match="does not exist in project"):
            sqlite.archive("acme", old.id, superseded_by=foreign.id)
        assert sqlite.get_chunk("acme", old.id).is_active

    def test_archived_content_can_be_restated(self, sqlite):
        old = make_chunk("acme", "We use Postgres", NEAR)
        sqlite.insert_chunks([old])
        sqlite.archive("acme", old.id)
        assert len(sqlite.insert_chunks([make_chunk("acme", "We use Postgres", NEAR)])) == 1


class TestRecordRetrieval:
    """Tests for retrieval usage counters."""

    def test_new_chunk_never_retrieved(self, sqlite):
        chunk = make_chunk("acme", "MRR is $50k", NEAR)
        sqlite.insert_chunks([chunk])

        stored = sqlite.get_chunk("acme", chunk.id)
        assert stored.retrieval_count == 0
        assert stored.last_retrieved_at is None
        assert stored.average_usefulness is None

    def test_counts_and_running_mean(self, sqlite):
        chunk = make_chunk("acme", "MRR is $50k", NEAR)
        sqlite.insert_chunks([chunk])

        assert sqlite.record_retrieval("acme", [chunk.id], {chunk.id: 0.9}) == 1
        assert sqlite.record_retrieval("acme", [chunk.id], {chunk.id: 0.7}) == 1

        stored = sqlite.get_chunk("acme", chunk.id)
        assert stored.retrieval_count == 2
        assert stored.average_usefulness == pytest.approx(0.8)
        assert stored.last_retrieved_at is not None

    def test_count_without_usefulness_keeps_mean(self, sqlite):
        chunk = make_chunk("acme", "MRR is $50k", NEAR)
        sqlite.insert_chunks([chunk])

        sqlite.record_retrieval("acme", [chunk.id], {chunk.id: 0.6})
        sqlite.record_retrieval("acme", [chunk.id])

        stored = sqlite.get_chunk("acme", chunk.id)
        assert stored.retrieval_count == 2
        assert stored.average_usefulness == pytest.approx(0.6)

    def test_scoped_to_project(self, sqlite):
        foreign = make_chunk("globex", "MRR is $50k", NEAR)
        sqlite.insert_chunks([foreign])

        assert sqlite.record_retrieval("acme", [foreign.id]) == 0
        assert sqlite.get_chunk("globex", foreign.id).retrieval_count == 0

    def test_empty_ids(self, sqlite):
        assert sqlite.record_retrieval("acme", []) == 0


class TestReads:
    """Tests for project-scoped reads."""

    def test_get_chunk_other_project_is_none(self, sqlite):
        chunk = make_chunk("acme", "secret plan", NEAR)
        sqlite.insert_chunks([chunk])
        assert sqlite.get_chunk("globex", chunk.id) is None

    def test_get_chunks_active_only(self, sqlite):
        live = make_chunk("acme", "live", NEAR)
        dead = make_chunk("acme", "dead", NEAR)
        sqlite.insert_chunks([live, dead])
        sqlite.archive("acme", dead.id)

        assert set(sqlite.get_chunks("acme", [live.id, dead.id])) == {live.id, dead.id}
        assert set(sqlite.get_chunks("acme", [live.id, dead.id], active_only=True)) == {live.id}

    def test_existing_hashes(self, sqlite):
        chunk = make_chunk("acme", "known", NEAR)
        sqlite.insert_chunks([chunk])
        assert sqlite.existing_hashes("acme", [chunk.content_hash, "f" * 64]) == {chunk.content_hash}
        assert sqlite.existing_hashes("globex", [chunk.content_hash]) == set()

    def test_list_chunks_newest_first(self, sqlite):
        older = make_chunk("acme", "older", NEAR, created_at=datetime.fromtimestamp(time.time() - 100))
        newer = make_chunk("acme", "newer", NEAR, MemoryType.TASK)
        sqlite.insert_chunks([older, newer])

        assert [c.id for c in sqlite.list_chunks("acme")] == [newer.id, older.id]
        assert [c.id for c in sqlite.list_chunks("acme", memory_type=MemoryType.TASK)] == [newer.id]

    def test_invalid_project_rejected(self, sqlite):
        with pytest.raises(ValueError):
            sqlite.count_chunks("")


class TestKeywordScores:
    """Tests for FTS5 keyword relevance."""

    def test_build_fts_query(self):
        assert build_fts_query("What's our burn rate?") == '"what" OR "our" OR "burn" OR "rate"'
        assert build_fts_query("? !") is None

    def test_matching_chunks_scored(self, sqlite):
        burn = make_chunk("acme", "Monthly burn rate is $80k", NEAR)
        hiring = make_chunk("acme", "We hired two engineers", NEAR)
        sqlite.insert_chunks([burn, hiring])

        scores = sqlite.keyword_scores("acme", "burn rate", [burn.id, hiring.id])
        assert set(scores) == {burn.id}
        assert scores[burn.id] < 0

    def test_scores_scoped_to_project(self, sqlite):
        foreign = make_chunk("globex", "Monthly burn rate is $80k", NEAR)
        sqlite.insert_chunks([foreign])
        assert sqlite.keyword_scores("acme", "burn rate", [foreign.id]) == {}


class TestOutbox:
    """Tests for outbox bookkeeping."""

    def test_mark_processed(self, sqlite):
        chunk = make_chunk("acme", "one", NEAR)
        sqlite.insert_chunks([chunk])
        assert sqlite.mark_outbox_processed([chunk.id]) == 1
        assert sqlite.get_pending_outbox() == []

    def test_error_keeps_entry_pending(self, sqlite):
        chunk = make_chunk("acme", "one", NEAR)
        sqlite.insert_chunks([chunk])
        sqlite.mark_outbox_processed([chunk.id], error_message="chroma down")
        assert sqlite.count_pending_outbox() == 1


class TestAuditEntries:
    """Tests for audit log storage."""

    def test_add_and_query(self, sqlite):
        sqlite.add_audit_entry("acme", "retrieve", "ok", actor="cfo-agent", result_size=3, score=0.8)
        sqlite.add_audit_entry("acme", "ingest", "error", error="boom", details={"failed": 1})
        sqlite.add_audit_entry("globex", "retrieve", "ok")

        entries = sqlite.get_audit_entries("acme")
        assert [e["operation"] for e in entries] == ["ingest", "retrieve"]
        assert entries[0]["details"] == {"failed": 1}
        assert entries[1]["actor"] == "cfo-agent"

        assert len(sqlite.get_audit_entries("acme", operation="retrieve")) == 1
        assert sqlite.get_audit_entries("acme", since=time.time() + 60) == []
