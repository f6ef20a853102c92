from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import main
from agent.filter_graph import FILTER_TOOL_NAME
from agent.models import StubFilterModel
from rate_limit import RateLimiter


class _BrokenLLM:
    def invoke(self, messages):
        raise RuntimeError("provider exploded")


@pytest.fixture
def limiter():
    return RateLimiter(limit=3, window_ms=120_000, rng=lambda: 1.0)


@pytest.fixture
def make_client(limiter: RateLimiter):
    def _make(model=None, llm=None) -> TestClient:
        main.app.dependency_overrides[main.get_rate_limiter] = lambda: limiter
        main.app.dependency_overrides[main.get_filter_model] = lambda: model
        main.app.dependency_overrides[main.get_summary_llm] = lambda: llm
        return TestClient(main.app)

    yield _make
    main.app.dependency_overrides.clear()


def _body(query: str = "jazz concerts", **extra):
    return {"query": query, "availableThemes": ["Jazz", "Food"], "availableCategories": ["Music"], **extra}


def test_health_and_ping(make_client):
    client = make_client()
    assert client.get("/health").json() == {"status": "ok"}
    ping = client.get("/ai-search").json()
    assert ping["message"] == "AI Search API is working"
    assert ping["method"] == "GET"


def test_search_returns_tool_filters_in_camel_case(make_client):
    reply = AIMessage(
        content="",
        tool_calls=[{"name": FILTER_TOOL_NAME, "args": {"themes": "jazz", "categories": ["Music"], "isFree": True}, "id": "c1"}],
    )
    client = make_client(model=StubFilterModel(reply))
    res = client.post("/ai-search", json=_body())
    assert res.status_code == 200
    data = res.json()
    assert data["filters"] == {"isFree": True, "themes": ["Jazz"], "categories": ["Music"]}
    assert "response" not in data
    assert res.headers["X-RateLimit-Limit"] == "3"
    assert res.headers["X-RateLimit-Remaining"] == "2"


def test_search_includes_direct_response(make_client):
    client = make_client(model=StubFilterModel(AIMessage(content="I only know about Toronto events.")))
    res = client.post("/ai-search", json=_body("tell me a joke"))
    assert res.status_code == 200
    assert res.json()["response"] == "I only know about Toronto events."
    assert res.json()["filters"]["keywords"] == ["tell", "joke"]


def test_search_model_failure_degrades_to_keywords(make_client):
    client = make_client(model=StubFilterModel(ConnectionError("network down")))
    res = client.post("/ai-search", json=_body("free comedy"))
    assert res.status_code == 200
    assert res.json()["filters"] == {"isFree": True, "keywords": ["comedy"]}


def test_search_without_provider_is_500_with_fallback_filters(make_client):
    client = make_client(model=None)
    res = client.post("/ai-search", json=_body("street food"))
    assert res.status_code == 500
    data = res.json()
    assert data["error"] == "Failed to process AI search"
    assert data["details"]
    assert data["filters"] == {"keywords": ["street", "food"]}


def test_search_bad_input_is_400(make_client, limiter: RateLimiter):
    limiter.limit = 10
    client = make_client(model=StubFilterModel())
    res = client.post("/ai-search", content=b"{not json", headers={"Content-Type": "application/json"})
    assert res.status_code == 400
    assert "error" in res.json()

    assert client.post("/ai-search", json={"availableThemes": []}).status_code == 400
    assert client.post("/ai-search", json={"query": "   "}).status_code == 400
    assert client.post("/ai-search", json=["jazz"]).status_code == 400


def test_search_rate_limit_is_429_with_headers(make_client):
    client = make_client(model=StubFilterModel())
    for _ in range(3):
        assert client.post("/ai-search", json=_body()).status_code == 200
    res = client.post("/ai-search", json=_body())
    assert res.status_code == 429
    data = res.json()
    assert data["error"] == "Rate limit exceeded"
    assert "3 requests per 2 minutes" in data["message"]
    assert data["retryAfter"] == 120
    assert res.headers["Retry-After"] == "120"
    assert res.headers["X-RateLimit-Remaining"] == "0"


def test_rate_limit_is_keyed_by_forwarded_client(make_client):
    client = make_client(model=StubFilterModel())
    for _ in range(3):
        client.post("/ai-search", json=_body(), headers={"x-forwarded-for": "1.1.1.1"})
    assert client.post("/ai-search", json=_body(), headers={"x-forwarded-for": "1.1.1.1"}).status_code == 429
    assert client.post("/ai-search", json=_body(), headers={"x-forwarded-for": "2.2.2.2"}).status_code == 200


def test_respond_uses_model_text(make_client):
    client = make_client(llm=FakeListChatModel(responses=["  Jazz Night at Harbourfront is free this Saturday.  "]))
    res = client.post("/ai-search/respond", json={"query": "jazz", "eventSummaries": ["Jazz Night (Jun 7)"], "count": 1})
    assert res.status_code == 200
    assert res.json() == {"response": "Jazz Night at Harbourfront is free this Saturday."}


def test_respond_falls_back_without_model_or_on_error(make_client):
    client = make_client(llm=None)
    res = client.post("/ai-search/respond", json={"query": "jazz", "eventSummaries": ["a", "b"], "count": 2})
    assert res.json() == {"response": "I found 2 events for you."}

    client = make_client(llm=_BrokenLLM())
    res = client.post("/ai-search/respond", json={"query": "jazz", "eventSummaries": [], "count": 0})
    assert res.status_code == 200
    assert res.json()["response"].startswith("I couldn't find any events")


def test_respond_bad_input_is_400(make_client):
    client = make_client()
    assert client.post("/ai-search/respond", json={"query": "jazz"}).status_code == 400
    assert client.post("/ai-search/respond", content=b"nope").status_code == 400


def test_client_log_relay(make_client, caplog: pytest.LogCaptureFixture):
    client = make_client()
    with caplog.at_level("INFO", logger="main"):
        res = client.post("/ai-search/log", json={"level": "warn", "message": "map failed", "data": {"code": 7}})
    assert res.json() == {"success": True}
    assert any("map failed" in r.getMessage() and r.levelname == "WARNING" for r in caplog.records)

    bad = client.post("/ai-search/log", json={"level": "debug", "message": "x"})
    assert bad.status_code == 400
    assert bad.json() == {"success": False}
