"""Retrieval of grounding context for a user's question.

Flow per request:
1. Existence check: does the user have any non-deleted chunks at all?
2. Try each strategy in order until one succeeds:
   - ``VectorSearchStrategy``: embed the question, fetch nearest neighbours,
     diversify with MMR
   - ``KeywordSearchStrategy``: score a page of chunks by query-term matches
3. Deduplicate by ``(memo_id, chunk_index)``.

Strategies signal failure by raising ``RetrievalError``. The engine logs it and
moves on; it never raises for retrieval reasons, so the caller always gets a
(possibly empty) list.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence

from memo_chat.config import RetrievalSettings, TimeoutSettings
from memo_chat.models.chunk import Candidate, Context
from memo_chat.services.chunk_store import ChunkStore
from memo_chat.services.embedding_service import EmbeddingService
from memo_chat.services.similarity import select_by_mmr
from memo_chat.utils.errors import MemoChatException, RetrievalError
from memo_chat.utils.logging import get_logger
from memo_chat.utils.resilience import with_timeout, with_timeout_retry
from memo_chat.utils.text import count_word_matches, query_terms

logger = get_logger("retrieval_service")


def dedupe_contexts(contexts: Iterable[Context]) -> List[Context]:
    """Drop repeated ``(memo_id, chunk_index)`` pairs, keeping first-seen order."""
    seen = set()
    out: List[Context] = []
    for context in contexts:
        if context.key in seen:
            continue
        seen.add(context.key)
        out.append(context)
    return out


class RetrievalStrategy(Protocol):
    name: str

    async def retrieve(self, user_id: str, question: str) -> List[Context]: ...


class VectorSearchStrategy:
    """Embedding similarity search re-ranked with MMR."""

    name = "vector"

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingService,
        retrieval: RetrievalSettings,
        timeouts: TimeoutSettings,
    ):
        self.store = store
        self.embedder = embedder
        self.retrieval = retrieval
        self.timeouts = timeouts

    async def retrieve(self, user_id: str, question: str) -> List[Context]:
        try:
            vector = await with_timeout(
                self.embedder.embed(question), self.timeouts.embedding, "Embedding generation"
            )
        except MemoChatException as e:
            raise RetrievalError(self.name, f"Query embedding failed: {e.message}") from e

        if not vector:
            raise RetrievalError(self.name, "Query embedding was empty")

        try:
            candidates = await with_timeout(
                self.store.nearest(user_id, vector, limit=self.retrieval.candidate_pool),
                self.timeouts.store,
                "Vector search",
            )
        except MemoChatException as e:
            raise RetrievalError(self.name, f"Vector search failed: {e.message}") from e

        logger.debug(
            f"Vector search returned {len(candidates)} candidates", extra={"strategy": self.name}
        )
        return select_by_mmr(
            candidates,
            vector,
            k=self.retrieval.context_size,
            lambda_=self.retrieval.mmr_lambda,
            max_chars=self.retrieval.max_context_chars,
        )


class KeywordSearchStrategy:
    """Term-match scoring over a bounded page of chunks.

    A whole-word match in the chunk text scores ``text_match_weight`` per
    occurrence; a query term found in the chunk's precomputed term list scores
    ``term_match_weight``.
    """

    name = "keyword"

    def __init__(
        self,
        store: ChunkStore,
        retrieval: RetrievalSettings,
        timeouts: TimeoutSettings,
    ):
        self.store = store
        self.retrieval = retrieval
        self.timeouts = timeouts

    def score(self, terms: Sequence[str], candidate: Candidate) -> float:
        chunk_terms = {t.lower() for t in candidate.terms}
        total = 0.0
        for term in terms:
            total += count_word_matches(term, candidate.text) * self.retrieval.text_match_weight
            if term in chunk_terms:
                total += self.retrieval.term_match_weight
        return total

    async def retrieve(self, user_id: str, question: str) -> List[Context]:
        terms = query_terms(question)
        try:
            page = await with_timeout_retry(
                lambda: self.store.scan(user_id, limit=self.retrieval.keyword_page_size),
                self.timeouts.store,
                "Keyword search",
                attempts=self.timeouts.cheap_call_attempts,
            )
        except MemoChatException as e:
            raise RetrievalError(self.name, f"Keyword search failed: {e.message}") from e

        if not terms:
            return []

        scored = []
        for candidate in page:
            candidate.score = self.score(terms, candidate)
            if candidate.score > 0:
                scored.append(candidate)

        # sorted() is stable, so equal scores keep store order
        scored = sorted(scored, key=lambda c: c.score, reverse=True)
        top = scored[: self.retrieval.keyword_top_n]
        logger.debug(
            f"Keyword search matched {len(scored)} of {len(page)} chunks", extra={"strategy": self.name}
        )
        return [c.to_context(self.retrieval.max_context_chars) for c in top]


class RetrievalEngine:
    """Runs the existence check and the strategy ladder for one question."""

    def __init__(
        self,
        store: ChunkStore,
        strategies: Sequence[RetrievalStrategy],
        timeouts: TimeoutSettings,
    ):
        self.store = store
        self.strategies = list(strategies)
        self.timeouts = timeouts

    @classmethod
    def build(
        cls,
        store: ChunkStore,
        embedder: Optional[EmbeddingService],
        retrieval: RetrievalSettings,
        timeouts: TimeoutSettings,
    ) -> "RetrievalEngine":
        """Default ladder: vector search first (when an embedder exists), then keywords."""
        strategies: List[RetrievalStrategy] = []
        if embedder is not None:
            strategies.append(VectorSearchStrategy(store, embedder, retrieval, timeouts))
        strategies.append(KeywordSearchStrategy(store, retrieval, timeouts))
        return cls(store, strategies, timeouts)

    async def _has_chunks(self, user_id: str) -> bool:
        try:
            return await with_timeout_retry(
                lambda: self.store.has_chunks(user_id),
                self.timeouts.store,
                "Chunk existence check",
                attempts=self.timeouts.cheap_call_attempts,
            )
        except MemoChatException as e:
            logger.warning(f"Chunk existence check failed, answering without context: {e.message}")
            return False

    async def retrieve(self, user_id: str, question: str) -> List[Context]:
        """Ranked, deduplicated context for ``question``. Empty when nothing is found."""
        if not await self._has_chunks(user_id):
            logger.info("No chunks found for user", extra={"contexts": 0})
            return []

        for strategy in self.strategies:
            try:
                contexts = await strategy.retrieve(user_id, question)
            except RetrievalError as e:
                logger.warning(
                    f"Retrieval strategy '{strategy.name}' failed, falling back: {e.message}",
                    extra={"strategy": strategy.name},
                )
                continue

            contexts = dedupe_contexts(contexts)
            logger.info(
                f"Retrieved {len(contexts)} contexts via {strategy.name} search",
                extra={"strategy": strategy.name, "contexts": len(contexts)},
            )
            return contexts

        logger.warning("All retrieval strategies failed, answering without context")
        return []
