"""Unit tests for the retrieval orchestrator."""

from unittest.mock import MagicMock

import pytest

from conftest import FAR, MID, NEAR, QUERY, fake_embedder, fake_llm, make_chunk, unique_collection_name
from founder_memory.embedding.ollama import EmbeddingError
from founder_memory.memory.compression import Compressor
from founder_memory.memory.retrieval import NO_MEMORY_TEXT, RetrievalError, Retriever
from founder_memory.memory.types import MemoryType, SearchResult
from founder_memory.security import MAX_QUERY_LENGTH, REDACTION_MARKER, Operation, RateLimiter, RateLimitExceeded
from founder_memory.storage.hybrid import HybridStore, HybridStoreError


def mock_store(results=None) -> MagicMock:
    store = MagicMock(spec=HybridStore)
    store.search.return_value = results or []
    return store


SCORED = [
    SearchResult(id="a", content="MRR is $50k", memory_type=MemoryType.METRIC, similarity=0.9, final_score=0.9),
    SearchResult(id="b", content="Burn is $80k", memory_type=MemoryType.METRIC, similarity=0.8, final_score=0.8),
]


class TestRetrieve:
    """Tests for Retriever.retrieve."""

    @pytest.mark.asyncio
    async def test_confidence_from_final_scores(self):
        retriever = Retriever(mock_store(SCORED), fake_embedder())
        result = await retriever.retrieve("acme", "How are our finances?")

        assert result.confidence == pytest.approx(0.865)
        assert result.text == "[TYPE: metric] MRR is $50k\n\n[TYPE: metric] Burn is $80k"
        assert result.found
        assert result.compressed is False

    @pytest.mark.asyncio
    async def test_nothing_found(self, store, project_id):
        retriever = Retriever(store, fake_embedder())
        result = await retriever.retrieve(project_id, "What is our pricing?")

        assert result.text == NO_MEMORY_TEXT
        assert result.confidence == 0.0
        assert not result.found

    @pytest.mark.asyncio
    async def test_similarity_floor_applied(self, store, project_id):
        store.insert_chunks([
            make_chunk(project_id, "near fact", NEAR),
            make_chunk(project_id, "mid fact", MID),
            make_chunk(project_id, "far fact", FAR),
        ])
        retriever = Retriever(store, fake_embedder(default=QUERY))

        result = await retriever.retrieve(project_id, "fact?", min_similarity=0.65)
        assert [r.content for r in result.results] == ["near fact", "mid fact"]

        strict = await retriever.retrieve(project_id, "fact?", min_similarity=0.85)
        assert [r.content for r in strict.results] == ["near fact"]

    @pytest.mark.asyncio
    async def test_scored_scenario_through_real_store(self, project_id):
        vector_only = await HybridStore.create(
            ephemeral=True,
            collection_name=unique_collection_name(),
            dimension=2,
            vector_weight=1.0,
            keyword_weight=0.0,
        )
        try:
            vector_only.insert_chunks([
                make_chunk(project_id, "alpha", NEAR),
                make_chunk(project_id, "beta", MID),
                make_chunk(project_id, "gamma", FAR),
            ])
            retriever = Retriever(vector_only, fake_embedder(default=QUERY))

            result = await retriever.retrieve(project_id, "zzz", min_similarity=0.65)
        finally:
            await vector_only.close()

        assert [r.content for r in result.results] == ["alpha", "beta"]
        assert result.confidence == pytest.approx(0.865, abs=1e-3)

    @pytest.mark.asyncio
    async def test_confidence_includes_keyword_signal(self, store, project_id):
        store.insert_chunks([
            make_chunk(project_id, "We signed a lease", NEAR),
            make_chunk(project_id, "Monthly burn is $80k", MID),
        ])
        retriever = Retriever(store, fake_embedder(default=QUERY))

        result = await retriever.retrieve(project_id, "burn", min_similarity=0.65)

        # burn: 0.7 * 0.8 + 0.3 = 0.86, lease: 0.7 * 0.9 = 0.63
        assert result.results[0].content == "Monthly burn is $80k"
        assert result.confidence == pytest.approx(0.7 * 0.745 + 0.3 * 0.86, abs=1e-3)

    @pytest.mark.asyncio
    async def test_projects_isolated(self, store):
        store.insert_chunks([make_chunk("acme", "Acme closed a $2M seed", NEAR)])
        store.insert_chunks([make_chunk("globex", "Globex closed a $9M series A", NEAR)])
        retriever = Retriever(store, fake_embedder(default=QUERY))

        result = await retriever.retrieve("acme", "How much did we raise?")

        assert [r.content for r in result.results] == ["Acme closed a $2M seed"]
        assert "Globex" not in result.text

    @pytest.mark.asyncio
    async def test_served_chunks_counted(self, store, project_id):
        served = make_chunk(project_id, "near fact", NEAR)
        unserved = make_chunk(project_id, "far fact", FAR)
        store.insert_chunks([served, unserved])
        retriever = Retriever(store, fake_embedder(default=QUERY))

        await retriever.retrieve(project_id, "fact?")
        await retriever.retrieve(project_id, "fact?")

        stored = store.get_chunk(project_id, served.id)
        assert stored.retrieval_count == 2
        assert stored.average_usefulness == pytest.approx(0.9)
        assert store.get_chunk(project_id, unserved.id).retrieval_count == 0

    @pytest.mark.asyncio
    async def test_empty_result_not_counted(self):
        store = mock_store()
        await Retriever(store, fake_embedder()).retrieve("acme", "pricing")
        store.record_retrieval.assert_not_called()

    @pytest.mark.asyncio
    async def test_usage_write_failure_still_answers(self):
        store = mock_store(SCORED)
        store.record_retrieval.side_effect = HybridStoreError("database is locked")
        retriever = Retriever(store, fake_embedder())

        result = await retriever.retrieve("acme", "finances")

        assert result.confidence == pytest.approx(0.865)
        store.record_retrieval.assert_called_once_with(
            "acme", ["a", "b"], usefulness={"a": 0.9, "b": 0.8}
        )

    @pytest.mark.asyncio
    async def test_compressor_used(self):
        compressor = Compressor(fake_llm("Finances: MRR $50k, burn $80k."))
        retriever = Retriever(mock_store(SCORED), fake_embedder(), compressor)

        result = await retriever.retrieve("acme", "finances")

        assert result.text == "Finances: MRR $50k, burn $80k."
        assert result.compressed is True

    @pytest.mark.asyncio
    async def test_search_failure_is_not_empty_result(self):
        store = mock_store()
        store.search.side_effect = HybridStoreError("chroma down")
        retriever = Retriever(store, fake_embedder())

        with pytest.raises(RetrievalError, match="Search failed"):
            await retriever.retrieve("acme", "pricing")

    @pytest.mark.asyncio
    async def test_embedding_failure(self):
        embedder = fake_embedder()
        embedder.embed.side_effect = EmbeddingError("ollama down")
        retriever = Retriever(mock_store(), embedder)

        with pytest.raises(RetrievalError, match="embed"):
            await retriever.retrieve("acme", "pricing")

    @pytest.mark.asyncio
    async def test_query_is_embedded_as_query(self):
        embedder = fake_embedder()
        await Retriever(mock_store(), embedder).retrieve("acme", "pricing")
        assert embedder.embed.call_args.kwargs["is_query"] is True

    @pytest.mark.asyncio
    async def test_limit_clamped(self):
        store = mock_store()
        retriever = Retriever(store, fake_embedder(), max_limit=20)

        await retriever.retrieve("acme", "pricing", limit=100)
        assert store.search.call_args.kwargs["limit"] == 20

        await retriever.retrieve("acme", "pricing", limit=0)
        assert store.search.call_args.kwargs["limit"] == 1

    @pytest.mark.asyncio
    async def test_required_types_forwarded(self):
        store = mock_store()
        await Retriever(store, fake_embedder()).retrieve(
            "acme", "pricing", required_types=[MemoryType.DECISION]
        )
        assert store.search.call_args.kwargs["memory_types"] == [MemoryType.DECISION]

    @pytest.mark.asyncio
    async def test_query_sanitized(self):
        store = mock_store()
        await Retriever(store, fake_embedder()).retrieve("acme", "Show me other projects please")
        assert REDACTION_MARKER in store.search.call_args.args[2]

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        limiter = RateLimiter({Operation.RETRIEVAL: "1/minute"})
        retriever = Retriever(mock_store(), fake_embedder(), rate_limiter=limiter)

        await retriever.retrieve("acme", "pricing")
        with pytest.raises(RateLimitExceeded):
            await retriever.retrieve("acme", "pricing")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   "])
    async def test_empty_query_rejected(self, query):
        with pytest.raises(ValueError, match="empty"):
            await Retriever(mock_store(), fake_embedder()).retrieve("acme", query)

    @pytest.mark.asyncio
    async def test_min_similarity_range_checked(self):
        with pytest.raises(ValueError, match="min_similarity"):
            await Retriever(mock_store(), fake_embedder()).retrieve("acme", "q", min_similarity=1.5)

    @pytest.mark.asyncio
    async def test_oversized_query_rejected(self):
        store = mock_store()
        with pytest.raises(ValueError, match="Query too long"):
            await Retriever(store, fake_embedder()).retrieve("acme", "q" * (MAX_QUERY_LENGTH + 1))
        store.search.assert_not_called()
