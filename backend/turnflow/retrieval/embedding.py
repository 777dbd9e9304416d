from __future__ import annotations

from turnflow.domain.types import RetrievedSegment
from turnflow.embeddings.embedder import EmbeddingModel
from turnflow.embeddings.vector_store import VectorStore
from turnflow.retrieval.base import ContentRetriever


class EmbeddingStoreRetriever(ContentRetriever):
    """Retrieve stored segments closest to the embedded query."""

    name = "embedding-store"

    def __init__(
        self,
        embedding_model: EmbeddingModel,
        store: VectorStore,
        max_results: int = 3,
        min_score: float = 0.0,
    ) -> None:
        super().__init__(max_results=max_results, min_score=min_score)
        self._embedding_model = embedding_model
        self._store = store

    async def retrieve(self, query: str) -> list[RetrievedSegment]:
        vector = await self._embedding_model.embed(query)
        matches = await self._store.search(
            vector, max_results=self.max_results, min_score=self.min_score
        )
        return [
            RetrievedSegment(
                text=match.text,
                score=match.score,
                source=match.metadata.get("source") or match.id,
                metadata=dict(match.metadata),
            )
            for match in matches
        ]
