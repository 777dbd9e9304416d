from __future__ import annotations

import json

import httpx
import pytest

from turnflow.core.errors import RetrievalError
from turnflow.domain.types import RetrievedSegment
from turnflow.embeddings.embedder import DeterministicEmbedder
from turnflow.embeddings.vector_store import InMemoryVectorStore
from turnflow.retrieval.base import merge_segments, rank_score
from turnflow.retrieval.embedding import EmbeddingStoreRetriever
from turnflow.retrieval.web import GoogleCustomWebSearchRetriever, TavilyWebSearchRetriever


def test_merge_orders_by_score_then_retriever_order():
    first = [RetrievedSegment("a", 0.5), RetrievedSegment("b", 0.2)]
    second = [RetrievedSegment("c", 0.9), RetrievedSegment("d", 0.5)]

    merged = merge_segments([first, second])

    assert [segment.text for segment in merged] == ["c", "a", "d", "b"]


def test_rank_score_decreases_with_rank():
    assert rank_score(0, 1) == 1.0
    assert rank_score(0, 4) > rank_score(1, 4) > rank_score(3, 4) > 0


@pytest.mark.anyio
async def test_tavily_retriever_filters_and_bounds_results():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "results": [
                    {"title": "Low", "url": "https://a.test", "content": "low", "score": 0.1},
                    {"title": "High", "url": "https://b.test", "content": "high", "score": 0.95},
                    {"title": "Mid", "url": "https://c.test", "content": "mid", "score": 0.6},
                    {"title": "Empty", "url": "https://d.test", "content": ""},
                ]
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        retriever = TavilyWebSearchRetriever(
            "tvly-test-key",
            base_url="https://api.tavily.test",
            max_results=2,
            min_score=0.5,
            http_client=client,
        )
        segments = await retriever.retrieve("kestra")

    assert seen[0]["query"] == "kestra"
    assert seen[0]["max_results"] == 2
    assert [segment.text for segment in segments] == ["high", "mid"]
    assert segments[0].source == "https://b.test"


@pytest.mark.anyio
async def test_min_score_is_inclusive():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            200, json={"results": [{"url": "u", "content": "edge", "score": 0.5}]}
        )
    )
    async with httpx.AsyncClient(transport=transport) as client:
        retriever = TavilyWebSearchRetriever("key", min_score=0.5, http_client=client)
        segments = await retriever.retrieve("q")

    assert [segment.text for segment in segments] == ["edge"]


@pytest.mark.anyio
async def test_google_retriever_uses_rank_scores():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/customsearch/v1"
        assert request.url.params["cx"] == "engine-1"
        assert request.url.params["num"] == "3"
        return httpx.Response(
            200,
            json={
                "items": [
                    {"title": "One", "link": "https://1.test", "snippet": "first"},
                    {"title": "Two", "link": "https://2.test", "snippet": "second"},
                ]
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        retriever = GoogleCustomWebSearchRetriever(
            "AIza-test", "engine-1", base_url="https://www.googleapis.test", http_client=client
        )
        segments = await retriever.retrieve("q")

    assert [segment.text for segment in segments] == ["first", "second"]
    assert segments[0].score > segments[1].score


@pytest.mark.anyio
async def test_web_retriever_maps_transport_errors():
    transport = httpx.MockTransport(lambda request: httpx.Response(429, json={"error": "slow"}))
    async with httpx.AsyncClient(transport=transport) as client:
        retriever = TavilyWebSearchRetriever("key", http_client=client)
        with pytest.raises(RetrievalError) as exc_info:
            await retriever.retrieve("q")

    assert exc_info.value.retryable
    assert exc_info.value.status_code == 429


def test_web_retriever_requires_api_key():
    with pytest.raises(RetrievalError):
        TavilyWebSearchRetriever("")


def test_retriever_bounds_are_validated():
    with pytest.raises(ValueError):
        TavilyWebSearchRetriever("key", max_results=0)
    with pytest.raises(ValueError):
        TavilyWebSearchRetriever("key", min_score=1.5)


@pytest.mark.anyio
async def test_embedding_store_retriever_returns_closest_segment():
    embedder = DeterministicEmbedder(dimension=64)
    store = InMemoryVectorStore()
    texts = {
        "paris": "Paris is the capital of France",
        "tokyo": "Tokyo is the capital of Japan",
    }
    for key, text in texts.items():
        await store.upsert(key, await embedder.embed(text), {"source": f"doc-{key}"}, text=text)

    retriever = EmbeddingStoreRetriever(embedder, store, max_results=1)
    segments = await retriever.retrieve("capital of France Paris")

    assert len(segments) == 1
    assert segments[0].text == texts["paris"]
    assert segments[0].source == "doc-paris"
    assert 0.0 <= segments[0].score <= 1.0
