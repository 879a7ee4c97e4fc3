"""Unit tests for memory data types."""

from datetime import datetime

import pytest

from founder_memory.memory.types import (
    ChunkMetadata,
    IngestResult,
    MemoryChunk,
    MemoryType,
    RetrievalResult,
    UpdateOutcome,
    UpdateResult,
    validate_project_id,
)


class TestMemoryType:
    """Tests for MemoryType parsing."""

    @pytest.mark.parametrize(
        "label,expected",
        [
            ("metric", MemoryType.METRIC),
            (" Decision ", MemoryType.DECISION),
            ("investor-feedback", MemoryType.INVESTOR_FEEDBACK),
            ("INVESTOR FEEDBACK", MemoryType.INVESTOR_FEEDBACK),
        ],
    )
    def test_parse(self, label, expected):
        assert MemoryType.parse(label) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            MemoryType.parse("gossip")


class TestValidateProjectId:
    """Tests for project id validation."""

    @pytest.mark.parametrize("project_id", ["acme", "acme-2024", "org:acme.web", "A_1"])
    def test_valid(self, project_id):
        assert validate_project_id(project_id) == project_id

    @pytest.mark.parametrize("project_id", ["", " acme", "../acme", "acme/x", "a b", None, "x" * 200])
    def test_invalid(self, project_id):
        with pytest.raises(ValueError):
            validate_project_id(project_id)


class TestChunkMetadata:
    """Tests for metadata serialization."""

    def test_unknown_keys_go_to_extra(self):
        meta = ChunkMetadata.from_dict({"source_id": "doc-1", "chunk_index": "2", "channel": "slack"})
        assert meta.source_id == "doc-1"
        assert meta.chunk_index == 2
        assert meta.extra == {"channel": "slack"}
        assert meta.to_dict() == {"source_id": "doc-1", "chunk_index": 2, "extra": {"channel": "slack"}}

    def test_empty(self):
        assert ChunkMetadata.from_dict(None).to_dict() == {}


class TestMemoryChunk:
    """Tests for MemoryChunk validation and serialization."""

    def make(self, **kwargs) -> MemoryChunk:
        values = dict(
            id="chk_1",
            project_id="acme",
            content="MRR is $50k",
            content_hash="h",
            memory_type=MemoryType.METRIC,
            embedding=[0.1, 0.2],
            created_at=datetime(2024, 3, 1, 12, 0),
        )
        values.update(kwargs)
        return MemoryChunk(**values)

    def test_to_dict_omits_embedding(self):
        data = self.make().to_dict()
        assert "embedding" not in data
        assert data["memory_type"] == "metric"
        assert data["created_at"] == "2024-03-01T12:00:00"
        assert data["is_active"] is True
        assert data["retrieval_count"] == 0
        assert data["last_retrieved_at"] is None

    def test_to_dict_usage(self):
        data = self.make(
            retrieval_count=3,
            last_retrieved_at=datetime(2024, 3, 2, 9, 30),
            average_usefulness=0.8,
        ).to_dict()
        assert data["retrieval_count"] == 3
        assert data["last_retrieved_at"] == "2024-03-02T09:30:00"
        assert data["average_usefulness"] == 0.8

    def test_project_required(self):
        with pytest.raises(ValueError):
            self.make(project_id="")

    def test_weight_positive(self):
        with pytest.raises(ValueError, match="founder_weight"):
            self.make(founder_weight=0)


class TestResults:
    """Tests for operation result types."""

    def test_retrieval_result(self):
        empty = RetrievalResult(text="none", confidence=0.0)
        assert not empty.found
        assert empty.to_dict()["sources"] == []

    def test_ingest_result_counts(self):
        result = IngestResult(project_id="acme", chunks_total=3, chunk_ids=["a", "b"], failed=1)
        assert result.inserted == 2
        assert result.to_dict()["inserted"] == 2

    def test_update_result(self):
        result = UpdateResult(outcome=UpdateOutcome.SHADOWED, chunk_id="b", previous_id="a")
        assert result.to_dict() == {"outcome": "shadowed", "chunk_id": "b", "previous_id": "a", "similarity": None}
