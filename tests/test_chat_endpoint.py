"""API tests for the chat endpoint and health checks."""

import json
from datetime import datetime
from typing import List

import pytest
from unittest.mock import AsyncMock

from memo_chat.models.chunk import Candidate
from memo_chat.services.prompt_builder import NO_CONTEXT_NOTICE
from memo_chat.utils.errors import EmbeddingError, LLMError

from tests.conftest import USER_ID, FakeEmbedder, FakeLLM

QUESTION_BODY = {"messages": [{"role": "user", "content": "What did the plumber say about the leak?"}]}


def _headers(user_id: str = USER_ID) -> dict:
    return {"X-User-Id": user_id}


def _events(response) -> List[dict]:
    frames = [f for f in response.text.split("\n\n") if f.startswith("data: ")]
    return [json.loads(f[len("data: "):]) for f in frames]


class TestIdentity:
    """Test caller identity checks."""

    def test_missing_identity_returns_401(self, make_client):
        response = make_client().post("/api/v1/chat", json=QUESTION_BODY)

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.parametrize("user_id", ["bob", "user_123", "user_" + "z" * 36])
    def test_malformed_identity_returns_401(self, make_client, user_id):
        response = make_client().post("/api/v1/chat", json=QUESTION_BODY, headers=_headers(user_id))
        assert response.status_code == 401

    def test_identity_checked_before_body(self, make_client):
        response = make_client().post("/api/v1/chat", content=b"not json")
        assert response.status_code == 401


class TestValidation:
    """Test request body validation."""

    @pytest.mark.parametrize(
        "body",
        [
            {"messages": []},
            {"messages": [{"role": "robot", "content": "hi"}]},
            {"messages": [{"role": "user", "content": "x" * 5001}]},
            {"messages": [{"role": "user", "content": "hi"}] * 101},
            {"messages": [{"role": "assistant", "content": "only an answer"}]},
            {"messages": [{"role": "user", "content": "   "}]},
            {"nothing": True},
        ],
    )
    def test_invalid_body_returns_400(self, make_client, body):
        response = make_client().post("/api/v1/chat", json=body, headers=_headers())

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["error"]

    def test_invalid_json_returns_400(self, make_client):
        response = make_client().post(
            "/api/v1/chat",
            content=b"{not json",
            headers={**_headers(), "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_latest_user_message_is_the_question(self, make_client, llm):
        body = {
            "messages": [
                {"role": "user", "content": "first question"},
                {"role": "assistant", "content": "first answer"},
                {"role": "user", "content": "follow-up question"},
            ]
        }
        response = make_client().post("/api/v1/chat", json=body, headers=_headers())

        assert response.status_code == 200
        assert llm.prompts[0][1].endswith("Question:\nfollow-up question")


class TestStreaming:
    """Test the event stream end to end."""

    def test_zero_chunks_still_answers(self, make_client, llm):
        response = make_client().post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())
        events = _events(response)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        assert events[0] == {"type": "citations", "citations": []}
        assert events[-1] == {"type": "done"}
        assert "".join(e["delta"] for e in events if e["type"] == "delta") == "Hello world"
        assert NO_CONTEXT_NOTICE in llm.prompts[0][1]

    def test_embedding_failure_falls_back_to_keyword_citations(self, make_client, chunk_store, llm):
        chunk_store.add(USER_ID, Candidate("memo-1", 0, "The plumber said the leak is under the sink.", [1.0, 0.0]))
        chunk_store.add(USER_ID, Candidate("memo-2", 0, "Buy flowers for our garden.", [0.0, 1.0]))
        client = make_client(embedder=FakeEmbedder(error=EmbeddingError("embedding provider down")))

        response = client.post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())
        events = _events(response)

        assert events[0]["type"] == "citations"
        assert events[0]["citations"] == [
            {"memoId": "memo-1", "chunkIndex": 0, "text": "The plumber said the leak is under the sink."}
        ]
        assert "[memo:memo-1 #0]" in llm.prompts[0][1]
        assert events[-1] == {"type": "done"}

    def test_vector_search_citations(self, make_client, chunk_store):
        chunk_store.add(USER_ID, Candidate("memo-1", 0, "Leak notes", [1.0, 0.0, 0.0]))
        chunk_store.add(USER_ID, Candidate("memo-1", 1, "More leak notes", [0.9, 0.1, 0.0]))

        response = make_client().post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())

        citations = _events(response)[0]["citations"]
        assert [(c["memoId"], c["chunkIndex"]) for c in citations] == [("memo-1", 0), ("memo-1", 1)]

    def test_other_users_chunks_are_not_visible(self, make_client, chunk_store):
        chunk_store.add("user_00000000-0000-0000-0000-000000000000", Candidate("x", 0, "leak", [1.0, 0.0, 0.0]))

        response = make_client().post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())

        assert _events(response)[0]["citations"] == []

    def test_completion_failure_is_an_error_event(self, make_client):
        client = make_client(llm=FakeLLM(tokens=["Partial"], error=LLMError("provider dropped")))

        response = client.post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())
        events = _events(response)

        assert response.status_code == 200
        assert [e["type"] for e in events] == ["citations", "delta", "error"]
        assert events[-1]["error"] == "Stream processing failed"

    def test_root_alias(self, make_client):
        response = make_client().post("/chat", json=QUESTION_BODY, headers=_headers())
        assert response.status_code == 200
        assert _events(response)[-1] == {"type": "done"}

    def test_request_id_is_echoed(self, make_client):
        response = make_client().post(
            "/api/v1/chat", json=QUESTION_BODY, headers={**_headers(), "X-Request-ID": "req-42"}
        )
        assert response.headers["x-request-id"] == "req-42"

    def test_retrieval_crash_before_stream_returns_500(self, make_client):
        client = make_client()
        client.app.state.retrieval_engine.retrieve = AsyncMock(side_effect=KeyError("bug"))

        response = client.post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to prepare answer", "code": "INTERNAL_ERROR"}


class TestRateLimiting:
    """Test admission control on the chat endpoint."""

    def test_thirty_five_requests_in_one_window(self, make_client):
        client = make_client()

        responses = [
            client.post("/api/v1/chat", json=QUESTION_BODY, headers=_headers()) for _ in range(35)
        ]

        assert [r.status_code for r in responses[:30]] == [200] * 30
        assert [r.status_code for r in responses[30:]] == [429] * 5

        retry_afters = [int(r.headers["retry-after"]) for r in responses[30:]]
        assert all(value >= 1 for value in retry_afters)
        assert retry_afters == sorted(retry_afters)
        for r in responses[30:]:
            body = r.json()
            assert body["code"] == "RATE_LIMITED"
            assert body["retryAfter"] == int(r.headers["retry-after"])
            assert r.headers["x-ratelimit-remaining"] == "0"

    def test_remaining_header_counts_down(self, make_client):
        client = make_client()

        first = client.post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())
        second = client.post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())

        assert first.headers["x-ratelimit-remaining"] == "29"
        assert second.headers["x-ratelimit-remaining"] == "28"

    def test_rate_limited_before_validation(self, make_client, rate_limiter):
        rate_limiter.max_requests = 1
        client = make_client()
        assert client.post("/api/v1/chat", json=QUESTION_BODY, headers=_headers()).status_code == 200

        response = client.post("/api/v1/chat", json={"messages": []}, headers=_headers())

        assert response.status_code == 429

    def test_store_outage_fails_open(self, make_client, rate_limiter):
        rate_limiter.store.get = AsyncMock(side_effect=ConnectionError("redis down"))

        response = make_client().post("/api/v1/chat", json=QUESTION_BODY, headers=_headers())

        assert response.status_code == 200


class TestHealth:
    """Test health and readiness endpoints."""

    @pytest.mark.parametrize("path", ["/health", "/api/v1/health"])
    def test_health(self, make_client, path):
        response = make_client().get(path)
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_reports_uptime_and_timestamp(self, make_client):
        body = make_client().get("/health").json()

        assert body["uptime"] >= 0
        assert datetime.fromisoformat(body["timestamp"]).tzinfo is not None

    def test_health_uses_app_settings(self, make_client, settings):
        settings.app_name = "memo-chat-staging"

        body = make_client().get("/health").json()

        assert body["app_name"] == "memo-chat-staging"

    @pytest.mark.parametrize("path", ["/metrics", "/api/v1/metrics"])
    def test_metrics(self, make_client, path):
        response = make_client().get(path)

        assert response.status_code == 200
        body = response.json()
        assert body["uptime"] >= 0
        assert body["memory"]["max_rss_mb"] > 0
        assert "timestamp" in body

    @pytest.mark.parametrize("path", ["/ready", "/api/v1/ready"])
    def test_ready_reports_missing_redis(self, make_client, path):
        response = make_client().get(path)

        assert response.status_code == 503
        assert response.json()["checks"] == {"redis": False, "qdrant": True}

    def test_ready_uses_app_settings(self, make_client, settings):
        settings.app_name = "memo-chat-staging"

        assert make_client().get("/ready").json()["app_name"] == "memo-chat-staging"

    def test_unknown_route_is_json_404(self, make_client):
        response = make_client().get("/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "HTTP_ERROR"
