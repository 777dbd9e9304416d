from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from turnflow.core.errors import RetrievalError
from turnflow.domain.types import RetrievedSegment
from turnflow.retrieval.base import ContentRetriever, rank_score

logger = logging.getLogger(__name__)


class WebSearchRetriever(ContentRetriever):
    """Shared HTTP behavior for web search engines."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        max_results: int = 3,
        min_score: float = 0.0,
        timeout_sec: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(max_results=max_results, min_score=min_score)
        if not api_key:
            raise RetrievalError("API_KEY_REQUIRED", f"API key is required for {self.name}.")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_sec
        self._client = http_client

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            if self._client:
                response = await self._client.request(method, url, timeout=self._timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RetrievalError(
                "RETRIEVER_TIMEOUT", f"{self.name} search timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise RetrievalError(
                "RETRIEVER_CONNECTION_ERROR", f"{self.name} search failed.", retryable=True
            ) from exc
        if response.status_code >= 400:
            raise RetrievalError(
                "RETRIEVER_BAD_STATUS",
                f"{self.name} returned {response.status_code}.",
                retryable=response.status_code == 429 or response.status_code >= 500,
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RetrievalError("RETRIEVER_PARSE_ERROR", f"Invalid JSON from {self.name}.") from exc
        if not isinstance(payload, dict):
            raise RetrievalError("RETRIEVER_PARSE_ERROR", f"Invalid payload from {self.name}.")
        return payload


class TavilyWebSearchRetriever(WebSearchRetriever):
    """Tavily search; relevance comes from the engine's own score."""

    name = "tavily"

    def __init__(self, api_key: str, base_url: str = "https://api.tavily.com", **kwargs: Any) -> None:
        super().__init__(api_key, base_url, **kwargs)

    async def retrieve(self, query: str) -> list[RetrievedSegment]:
        payload = await self._request_json(
            "POST",
            f"{self._base_url}/search",
            json={"api_key": self._api_key, "query": query, "max_results": self.max_results},
        )
        rows = payload.get("results") or []
        segments: list[RetrievedSegment] = []
        for index, row in enumerate(rows):
            if not isinstance(row, dict) or not row.get("content"):
                continue
            score = row.get("score")
            if not isinstance(score, (int, float)):
                score = rank_score(index, len(rows))
            segments.append(
                RetrievedSegment(
                    text=str(row["content"]),
                    score=float(score),
                    source=row.get("url"),
                    metadata={"title": row.get("title"), "url": row.get("url")},
                )
            )
        logger.debug("tavily returned %d results for query", len(segments))
        return self._bound(segments)


class GoogleCustomWebSearchRetriever(WebSearchRetriever):
    """Google Programmable Search; scores follow result rank."""

    name = "google"

    def __init__(
        self,
        api_key: str,
        csi: str,
        base_url: str = "https://www.googleapis.com",
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, base_url, **kwargs)
        if not csi:
            raise RetrievalError("SEARCH_ENGINE_ID_REQUIRED", "Custom search engine id is required.")
        self._csi = csi

    async def retrieve(self, query: str) -> list[RetrievedSegment]:
        payload = await self._request_json(
            "GET",
            f"{self._base_url}/customsearch/v1",
            params={
                "key": self._api_key,
                "cx": self._csi,
                "q": query,
                "num": min(self.max_results, 10),
            },
        )
        rows = [row for row in payload.get("items") or [] if isinstance(row, dict)]
        segments = [
            RetrievedSegment(
                text=str(row.get("snippet") or row.get("title") or ""),
                score=rank_score(index, len(rows)),
                source=row.get("link"),
                metadata={"title": row.get("title"), "url": row.get("link")},
            )
            for index, row in enumerate(rows)
            if row.get("snippet") or row.get("title")
        ]
        return self._bound(segments)
