from __future__ import annotations

import asyncio
import json
import math
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from turnflow.embeddings.embedder import relevance_score
from turnflow.repos.vector_repo import VectorRepo


@dataclass(frozen=True)
class VectorMatch:
    """One search hit with its 0..1 relevance score."""

    id: str
    text: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorStore(ABC):
    """Abstract embedding storage backend."""

    @abstractmethod
    async def upsert(
        self,
        id: str,
        vector: Sequence[float],
        metadata: Mapping[str, Any] | None = None,
        text: str = "",
    ) -> None:
        """Insert or replace one vector."""

    @abstractmethod
    async def search(
        self, query_vector: Sequence[float], max_results: int, min_score: float = 0.0
    ) -> list[VectorMatch]:
        """Return the best matches scoring at least ``min_score``."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every stored vector."""


@dataclass
class _StoredVector:
    text: str
    vector: list[float]
    metadata: dict[str, Any]


class InMemoryVectorStore(VectorStore):
    """Process-local store with brute-force cosine search."""

    def __init__(self) -> None:
        self._rows: dict[str, _StoredVector] = {}
        self._lock = asyncio.Lock()

    async def upsert(
        self,
        id: str,
        vector: Sequence[float],
        metadata: Mapping[str, Any] | None = None,
        text: str = "",
    ) -> None:
        async with self._lock:
            self._rows[id] = _StoredVector(
                text=text, vector=[float(value) for value in vector], metadata=dict(metadata or {})
            )

    async def search(
        self, query_vector: Sequence[float], max_results: int, min_score: float = 0.0
    ) -> list[VectorMatch]:
        if max_results <= 0:
            return []
        async with self._lock:
            rows = list(self._rows.items())
        matches = [
            VectorMatch(
                id=row_id,
                text=row.text,
                score=relevance_score(query_vector, row.vector),
                metadata=dict(row.metadata),
            )
            for row_id, row in rows
            if len(row.vector) == len(query_vector)
        ]
        return _top(matches, max_results, min_score)

    async def clear(self) -> None:
        async with self._lock:
            self._rows.clear()

    def __len__(self) -> int:
        return len(self._rows)


class SQLiteVectorStore(VectorStore):
    """SQL-backed store with in-process cosine similarity."""

    def __init__(
        self, sessionmaker: async_sessionmaker[AsyncSession], collection: str = "default"
    ) -> None:
        self._sessionmaker = sessionmaker
        self.collection = collection

    async def upsert(
        self,
        id: str,
        vector: Sequence[float],
        metadata: Mapping[str, Any] | None = None,
        text: str = "",
    ) -> None:
        values = [float(value) for value in vector]
        norm = math.sqrt(sum(value * value for value in values))
        async with self._sessionmaker() as db:
            async with db.begin():
                await VectorRepo(db).upsert(
                    entry_id=id,
                    collection=self.collection,
                    text=text,
                    metadata_json=json.dumps(dict(metadata or {}), ensure_ascii=False),
                    dim=len(values),
                    vector_json=json.dumps(values, separators=(",", ":")),
                    vector_norm=norm if norm > 0 else 1.0,
                )

    async def search(
        self, query_vector: Sequence[float], max_results: int, min_score: float = 0.0
    ) -> list[VectorMatch]:
        if max_results <= 0:
            return []
        query = [float(value) for value in query_vector]
        async with self._sessionmaker() as db:
            rows = await VectorRepo(db).list_vectors(self.collection, len(query))

        matches: list[VectorMatch] = []
        for row in rows:
            try:
                candidate = [float(value) for value in json.loads(row.vector_json)]
                metadata = json.loads(row.metadata_json or "{}")
            except (TypeError, ValueError):
                continue
            matches.append(
                VectorMatch(
                    id=row.id,
                    text=row.text,
                    score=relevance_score(query, candidate),
                    metadata=metadata if isinstance(metadata, dict) else {},
                )
            )
        return _top(matches, max_results, min_score)

    async def clear(self) -> None:
        async with self._sessionmaker() as db:
            async with db.begin():
                await VectorRepo(db).clear(self.collection)


def _top(matches: list[VectorMatch], max_results: int, min_score: float) -> list[VectorMatch]:
    kept = [match for match in matches if match.score >= min_score]
    kept.sort(key=lambda match: match.score, reverse=True)
    return kept[:max_results]
