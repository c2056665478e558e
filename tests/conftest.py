"""Pytest configuration and fixtures for memo chat tests."""

from typing import AsyncIterator, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from memo_chat.config import Settings
from memo_chat.models.chunk import Candidate
from memo_chat.services.rate_limit_store import InMemoryRateLimitStore
from memo_chat.services.rate_limiter import RateLimiter
from memo_chat.services.retrieval_service import RetrievalEngine
from memo_chat.services.similarity import cosine_similarity
from memo_chat.utils.errors import EmbeddingError, VectorStoreError

USER_ID = "user_123e4567-e89b-12d3-a456-426614174000"
OTHER_USER_ID = "user_9f1c2d3e-4b5a-6c7d-8e9f-0a1b2c3d4e5f"


class FakeChunkStore:
    """In-memory stand-in for ChunkStore."""

    def __init__(self, chunks: Optional[Dict[str, List[Candidate]]] = None):
        self.chunks = chunks or {}
        self.fail_existence_check = False
        self.fail_nearest = False
        self.fail_scan = False
        self.scan_calls = 0
        self.nearest_calls = 0

    def add(self, user_id: str, candidate: Candidate) -> None:
        self.chunks.setdefault(user_id, []).append(candidate)

    async def has_chunks(self, user_id: str) -> bool:
        if self.fail_existence_check:
            raise VectorStoreError("existence check failed", operation="has_chunks")
        return bool(self.chunks.get(user_id))

    async def nearest(self, user_id: str, vector: List[float], limit: int = 20) -> List[Candidate]:
        self.nearest_calls += 1
        if self.fail_nearest:
            raise VectorStoreError("search failed", operation="nearest")
        ranked = sorted(
            self.chunks.get(user_id, []),
            key=lambda c: cosine_similarity(c.embedding, vector),
            reverse=True,
        )
        return [
            Candidate(c.memo_id, c.chunk_index, c.text, list(c.embedding), 0.0, list(c.terms))
            for c in ranked[:limit]
        ]

    async def scan(self, user_id: str, limit: int = 50) -> List[Candidate]:
        self.scan_calls += 1
        if self.fail_scan:
            raise VectorStoreError("scan failed", operation="scan")
        return [
            Candidate(c.memo_id, c.chunk_index, c.text, [], 0.0, list(c.terms))
            for c in self.chunks.get(user_id, [])[:limit]
        ]

    def ping(self) -> None:
        return None


class FakeEmbedder:
    """Returns a fixed vector, or raises when ``error`` is set."""

    def __init__(self, vector: Optional[List[float]] = None, error: Optional[Exception] = None):
        self.vector = vector if vector is not None else [1.0, 0.0, 0.0]
        self.error = error
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vector)


class FakeLLM:
    """Streams canned tokens and records the prompts it was given."""

    def __init__(self, tokens: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.tokens = tokens if tokens is not None else ["Hello", " world"]
        self.error = error
        self.prompts: List[tuple] = []
        self.closed = False

    async def stream_complete(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        self.prompts.append((system_prompt, user_prompt))
        try:
            for token in self.tokens:
                yield token
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


@pytest.fixture
def settings() -> Settings:
    """Clean settings with defaults."""
    return Settings()


@pytest.fixture
def chunk_store() -> FakeChunkStore:
    return FakeChunkStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def failing_embedder() -> FakeEmbedder:
    return FakeEmbedder(error=EmbeddingError("provider down"))


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fixed_clock():
    """Mutable clock: call ``fixed_clock.now = ...`` to move time."""

    class Clock:
        now = 1_000.0

        def __call__(self) -> float:
            return self.now

    return Clock()


@pytest.fixture
def rate_limiter(fixed_clock) -> RateLimiter:
    return RateLimiter(InMemoryRateLimitStore(), window_seconds=60, max_requests=30, clock=fixed_clock)


@pytest.fixture
def make_client(settings, chunk_store, embedder, llm, rate_limiter):
    """Build a TestClient whose app.state holds fakes instead of live services.

    The lifespan is not run (no ``with`` block), so nothing connects to Redis or Qdrant.
    """
    from memo_chat.main import create_app

    def _make(**overrides) -> TestClient:
        app = create_app(settings)
        store = overrides.get("chunk_store", chunk_store)
        app.state.rate_limiter = overrides.get("rate_limiter", rate_limiter)
        app.state.chunk_store = store
        app.state.llm_service = overrides.get("llm", llm)
        app.state.retrieval_engine = RetrievalEngine.build(
            store,
            overrides.get("embedder", embedder),
            settings.retrieval,
            settings.timeouts,
        )
        return TestClient(app, raise_server_exceptions=overrides.get("raise_server_exceptions", True))

    return _make
