"""Unit tests for the retrieval engine and its strategies."""

import pytest

from memo_chat.config import RetrievalSettings, TimeoutSettings
from memo_chat.models.chunk import Candidate, Context
from memo_chat.services.retrieval_service import (
    KeywordSearchStrategy,
    RetrievalEngine,
    VectorSearchStrategy,
    dedupe_contexts,
)
from memo_chat.utils.errors import RetrievalError, UpstreamTimeoutError

from tests.conftest import USER_ID, FakeChunkStore, FakeEmbedder


@pytest.fixture
def retrieval_settings():
    return RetrievalSettings()


@pytest.fixture
def timeouts():
    return TimeoutSettings()


def _ctx(memo_id: str, index: int, text: str = "t") -> Context:
    return Context(memo_id=memo_id, chunk_index=index, text=text)


@pytest.fixture
def populated_store() -> FakeChunkStore:
    store = FakeChunkStore()
    store.add(USER_ID, Candidate("m1", 0, "We discussed the garden budget for spring.", [1.0, 0.0, 0.0]))
    store.add(USER_ID, Candidate("m1", 1, "Groceries: milk, eggs, bread.", [0.0, 1.0, 0.0]))
    store.add(
        USER_ID,
        Candidate("m2", 0, "Call the plumber about the leak.", [0.0, 0.0, 1.0], terms=["plumber", "leak"]),
    )
    return store


class TestDedupe:
    """Test deduplication by (memo_id, chunk_index)."""

    def test_keeps_first_occurrence_in_order(self):
        items = [_ctx("a", 0, "first"), _ctx("b", 1), _ctx("a", 0, "second"), _ctx("c", 2), _ctx("b", 1)]

        result = dedupe_contexts(items)

        assert [c.key for c in result] == [("a", 0), ("b", 1), ("c", 2)]
        assert result[0].text == "first"

    def test_is_idempotent(self):
        items = [_ctx("a", 0), _ctx("a", 0), _ctx("a", 1), _ctx("b", 0), _ctx("a", 1)]
        once = dedupe_contexts(items)
        assert dedupe_contexts(once) == once

    def test_same_index_different_memo_is_kept(self):
        assert len(dedupe_contexts([_ctx("a", 0), _ctx("b", 0)])) == 2


class TestKeywordSearch:
    """Test keyword fallback scoring."""

    def test_text_matches_weigh_double_term_matches(self, retrieval_settings, timeouts):
        strategy = KeywordSearchStrategy(FakeChunkStore(), retrieval_settings, timeouts)
        text_hit = Candidate("a", 0, "the leak is back")
        term_hit = Candidate("b", 0, "nothing relevant here", terms=["leak"])

        assert strategy.score(["leak"], text_hit) == 2.0
        assert strategy.score(["leak"], term_hit) == 1.0

    def test_whole_word_case_insensitive(self, retrieval_settings, timeouts):
        strategy = KeywordSearchStrategy(FakeChunkStore(), retrieval_settings, timeouts)
        candidate = Candidate("a", 0, "Leak leak LEAK leaky")
        assert strategy.score(["leak"], candidate) == 6.0

    @pytest.mark.asyncio
    async def test_ranks_and_drops_zero_scores(self, populated_store, retrieval_settings, timeouts):
        strategy = KeywordSearchStrategy(populated_store, retrieval_settings, timeouts)

        result = await strategy.retrieve(USER_ID, "What did the plumber say about the leak?")

        # "the" also matches m1/0 once; m1/1 matches nothing
        assert [c.key for c in result] == [("m2", 0), ("m1", 0)]

    @pytest.mark.asyncio
    async def test_common_words_count_as_terms(self, retrieval_settings, timeouts):
        store = FakeChunkStore()
        store.add(USER_ID, Candidate("m1", 0, "They said the meeting was moved"))
        store.add(USER_ID, Candidate("m2", 0, "Buy milk"))
        strategy = KeywordSearchStrategy(store, retrieval_settings, timeouts)

        result = await strategy.retrieve(USER_ID, "What did they say?")

        assert [c.memo_id for c in result] == ["m1"]

    @pytest.mark.asyncio
    async def test_respects_top_n(self, timeouts):
        store = FakeChunkStore()
        for i in range(5):
            store.add(USER_ID, Candidate("m", i, "budget " * (i + 1)))
        strategy = KeywordSearchStrategy(store, RetrievalSettings(keyword_top_n=3), timeouts)

        result = await strategy.retrieve(USER_ID, "budget")

        assert [c.chunk_index for c in result] == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_short_terms_are_ignored(self, populated_store, retrieval_settings, timeouts):
        strategy = KeywordSearchStrategy(populated_store, retrieval_settings, timeouts)
        assert await strategy.retrieve(USER_ID, "is it on?") == []

    @pytest.mark.asyncio
    async def test_store_failure_raises_retrieval_error(self, retrieval_settings, timeouts):
        store = FakeChunkStore()
        store.fail_scan = True
        strategy = KeywordSearchStrategy(store, retrieval_settings, timeouts)

        with pytest.raises(RetrievalError) as exc_info:
            await strategy.retrieve(USER_ID, "leak")
        assert exc_info.value.strategy == "keyword"


class TestVectorSearch:
    """Test the embedding + MMR strategy."""

    @pytest.mark.asyncio
    async def test_returns_nearest_contexts(self, populated_store, retrieval_settings, timeouts):
        strategy = VectorSearchStrategy(
            populated_store, FakeEmbedder([1.0, 0.0, 0.0]), retrieval_settings, timeouts
        )

        result = await strategy.retrieve(USER_ID, "garden?")

        assert result[0].key == ("m1", 0)
        assert len(result) == 3

    @pytest.mark.asyncio
    async def test_embedding_failure_raises_retrieval_error(
        self, populated_store, failing_embedder, retrieval_settings, timeouts
    ):
        strategy = VectorSearchStrategy(populated_store, failing_embedder, retrieval_settings, timeouts)

        with pytest.raises(RetrievalError):
            await strategy.retrieve(USER_ID, "garden?")
        assert populated_store.nearest_calls == 0

    @pytest.mark.asyncio
    async def test_empty_embedding_raises_retrieval_error(self, populated_store, retrieval_settings, timeouts):
        strategy = VectorSearchStrategy(populated_store, FakeEmbedder([]), retrieval_settings, timeouts)
        with pytest.raises(RetrievalError):
            await strategy.retrieve(USER_ID, "garden?")

    @pytest.mark.asyncio
    async def test_timeout_raises_retrieval_error(self, populated_store, retrieval_settings, timeouts):
        strategy = VectorSearchStrategy(
            populated_store,
            FakeEmbedder(error=UpstreamTimeoutError(label="Embedding generation", timeout=15)),
            retrieval_settings,
            timeouts,
        )
        with pytest.raises(RetrievalError):
            await strategy.retrieve(USER_ID, "garden?")


class TestRetrievalEngine:
    """Test the existence check and strategy ladder."""

    @pytest.mark.asyncio
    async def test_empty_corpus_skips_strategies(self, embedder, retrieval_settings, timeouts):
        store = FakeChunkStore()
        engine = RetrievalEngine.build(store, embedder, retrieval_settings, timeouts)

        assert await engine.retrieve(USER_ID, "anything") == []
        assert embedder.calls == []
        assert store.scan_calls == 0

    @pytest.mark.asyncio
    async def test_existence_check_failure_yields_empty_context(self, populated_store, embedder, retrieval_settings, timeouts):
        populated_store.fail_existence_check = True
        engine = RetrievalEngine.build(populated_store, embedder, retrieval_settings, timeouts)

        assert await engine.retrieve(USER_ID, "garden") == []

    @pytest.mark.asyncio
    async def test_vector_path_used_when_embedding_works(
        self, populated_store, embedder, retrieval_settings, timeouts
    ):
        engine = RetrievalEngine.build(populated_store, embedder, retrieval_settings, timeouts)

        result = await engine.retrieve(USER_ID, "garden")

        assert result[0].key == ("m1", 0)
        assert populated_store.scan_calls == 0

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_keywords(
        self, populated_store, failing_embedder, retrieval_settings, timeouts
    ):
        engine = RetrievalEngine.build(populated_store, failing_embedder, retrieval_settings, timeouts)

        result = await engine.retrieve(USER_ID, "Who fixes a leak?")

        assert [c.key for c in result] == [("m2", 0)]
        assert populated_store.scan_calls == 1

    @pytest.mark.asyncio
    async def test_vector_store_failure_falls_back_to_keywords(
        self, populated_store, embedder, retrieval_settings, timeouts
    ):
        populated_store.fail_nearest = True
        engine = RetrievalEngine.build(populated_store, embedder, retrieval_settings, timeouts)

        result = await engine.retrieve(USER_ID, "groceries milk")

        assert [c.key for c in result] == [("m1", 1)]

    @pytest.mark.asyncio
    async def test_all_strategies_failing_yields_empty(
        self, populated_store, failing_embedder, retrieval_settings, timeouts
    ):
        populated_store.fail_scan = True
        engine = RetrievalEngine.build(populated_store, failing_embedder, retrieval_settings, timeouts)

        assert await engine.retrieve(USER_ID, "leak") == []

    @pytest.mark.asyncio
    async def test_no_embedder_uses_keywords_only(self, populated_store, retrieval_settings, timeouts):
        engine = RetrievalEngine.build(populated_store, None, retrieval_settings, timeouts)

        assert [s.name for s in engine.strategies] == ["keyword"]
        assert [c.key for c in await engine.retrieve(USER_ID, "plumber")] == [("m2", 0)]

    @pytest.mark.asyncio
    async def test_results_are_deduplicated(self, retrieval_settings, timeouts):
        store = FakeChunkStore()
        store.add(USER_ID, Candidate("m1", 0, "duplicate write", [1.0, 0.0]))
        store.add(USER_ID, Candidate("m1", 0, "duplicate write", [1.0, 0.0]))
        store.add(USER_ID, Candidate("m1", 1, "other", [0.0, 1.0]))
        engine = RetrievalEngine.build(store, FakeEmbedder([1.0, 0.0]), retrieval_settings, timeouts)

        result = await engine.retrieve(USER_ID, "duplicate")

        assert [c.key for c in result] == [("m1", 0), ("m1", 1)]
