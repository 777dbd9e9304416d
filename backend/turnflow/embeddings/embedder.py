from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence

_TOKEN_PATTERN = re.compile(r"[\w-]+")


class EmbeddingError(RuntimeError):
    """Raised when embedding generation fails."""


class EmbeddingModel(ABC):
    """Embedding interface for pluggable providers."""

    provider: str
    model_name: str
    dimension: int | None

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate vectors for each text input."""

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        if not vectors:
            raise EmbeddingError("Embedding model returned no vector")
        return vectors[0]


class DeterministicEmbedder(EmbeddingModel):
    """Offline deterministic embedding generator for tests and local runs."""

    provider = "deterministic"

    def __init__(self, dimension: int = 64, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            vectors.append(self._embed_single(text))
        return vectors

    def _embed_single(self, text: str) -> list[float]:
        dimension = int(self.dimension or 64)
        vector = [0.0] * dimension
        tokens = _TOKEN_PATTERN.findall(text.lower())
        if not tokens:
            vector[0] = 1.0
            return vector

        # Feature hashing: each token adds a signed weight to one bucket.
        for token in tokens:
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], byteorder="big") % dimension
            weight = 1.0 + digest[5] / 255.0
            vector[bucket] += weight if digest[4] & 1 == 0 else -weight
        return normalize_vector(vector)


def normalize_vector(vector: Sequence[float]) -> list[float]:
    values = [float(item) for item in vector]
    norm = math.sqrt(sum(item * item for item in values))
    if norm <= 0:
        return values
    return [item / norm for item in values]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; mismatched or zero vectors score 0."""

    if len(left) != len(right) or not left:
        return 0.0
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm <= 0 or right_norm <= 0:
        return 0.0
    dot = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
    return dot / (left_norm * right_norm)


def relevance_score(left: Sequence[float], right: Sequence[float]) -> float:
    """Map cosine similarity onto a 0..1 relevance score."""

    return (cosine_similarity(left, right) + 1.0) / 2.0
