from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from turnflow.domain.types import RetrievedSegment

DEFAULT_MAX_RESULTS = 3
DEFAULT_MIN_SCORE = 0.0


class ContentRetriever(ABC):
    """Source of ranked text segments for a query."""

    name: str = "retriever"

    def __init__(
        self, max_results: int = DEFAULT_MAX_RESULTS, min_score: float = DEFAULT_MIN_SCORE
    ) -> None:
        if max_results < 1:
            raise ValueError("max_results must be >= 1")
        if not 0.0 <= min_score <= 1.0:
            raise ValueError("min_score must be between 0 and 1")
        self.max_results = max_results
        self.min_score = min_score

    @abstractmethod
    async def retrieve(self, query: str) -> list[RetrievedSegment]:
        """Return at most ``max_results`` segments scoring at least ``min_score``."""

    async def close(self) -> None:
        return None

    def _bound(self, segments: Iterable[RetrievedSegment]) -> list[RetrievedSegment]:
        kept = [segment for segment in segments if segment.score >= self.min_score]
        kept.sort(key=lambda segment: segment.score, reverse=True)
        return kept[: self.max_results]


def merge_segments(groups: Sequence[Sequence[RetrievedSegment]]) -> list[RetrievedSegment]:
    """Merge per-retriever results by descending score.

    Equal scores keep retriever order, then each retriever's own order.
    """

    merged = [segment for group in groups for segment in group]
    # sort is stable
    merged.sort(key=lambda segment: segment.score, reverse=True)
    return merged


def rank_score(index: int, total: int) -> float:
    """Score for engines that return ranked results without relevance values."""

    if total <= 1:
        return 1.0
    return 1.0 - (index / total)
