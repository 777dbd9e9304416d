from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from turnflow.embeddings.embedder import EmbeddingModel
from turnflow.embeddings.vector_store import VectorMatch, VectorStore

logger = logging.getLogger(__name__)


class DocumentSplitter(str, Enum):
    """How documents are cut into segments before embedding."""

    RECURSIVE = "RECURSIVE"
    PARAGRAPH = "PARAGRAPH"
    LINE = "LINE"
    SENTENCE = "SENTENCE"
    WORD = "WORD"


_PATTERNS = {
    DocumentSplitter.PARAGRAPH: (re.compile(r"\n\s*\n"), "\n\n"),
    DocumentSplitter.LINE: (re.compile(r"\n"), "\n"),
    DocumentSplitter.SENTENCE: (re.compile(r"(?<=[.!?])\s+"), " "),
    DocumentSplitter.WORD: (re.compile(r"\s+"), " "),
}

# Units too long for one segment are cut again with the next finer splitter.
_FINER = {
    DocumentSplitter.PARAGRAPH: DocumentSplitter.LINE,
    DocumentSplitter.LINE: DocumentSplitter.SENTENCE,
    DocumentSplitter.SENTENCE: DocumentSplitter.WORD,
}


@dataclass(frozen=True)
class Document:
    text: str
    id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestionResult:
    document_count: int = 0
    segment_count: int = 0
    segment_ids: list[str] = field(default_factory=list)


def split_text(
    text: str,
    splitter: DocumentSplitter = DocumentSplitter.RECURSIVE,
    max_segment_size: int = 500,
    overlap: int = 0,
) -> list[str]:
    """Cut text into segments of at most ``max_segment_size`` characters.

    Consecutive segments share up to ``overlap`` characters of whole units.
    """

    if max_segment_size < 1:
        raise ValueError("max_segment_size must be >= 1")
    if overlap < 0 or overlap >= max_segment_size:
        raise ValueError("overlap must be >= 0 and smaller than max_segment_size")
    if not text.strip():
        return []
    if splitter == DocumentSplitter.RECURSIVE:
        splitter = DocumentSplitter.PARAGRAPH
    return _pack(text, splitter, max_segment_size, overlap)


def _pack(text: str, splitter: DocumentSplitter, max_size: int, overlap: int) -> list[str]:
    pattern, joiner = _PATTERNS[splitter]
    units = [unit.strip() for unit in pattern.split(text) if unit.strip()]
    segments: list[str] = []
    current: list[str] = []

    def length(parts: list[str]) -> int:
        return sum(len(part) for part in parts) + len(joiner) * max(0, len(parts) - 1)

    for unit in units:
        if len(unit) > max_size:
            if current:
                segments.append(joiner.join(current))
                current = []
            segments.extend(_cut_long_unit(unit, splitter, max_size, overlap))
            continue
        if current and length(current + [unit]) > max_size:
            segments.append(joiner.join(current))
            current = _overlap_tail(current, joiner, overlap)
            while current and length(current + [unit]) > max_size:
                current.pop(0)
        current.append(unit)
    if current:
        segments.append(joiner.join(current))
    return segments


def _cut_long_unit(unit: str, splitter: DocumentSplitter, max_size: int, overlap: int) -> list[str]:
    finer = _FINER.get(splitter)
    if finer is not None:
        return _pack(unit, finer, max_size, overlap)
    step = max_size - overlap
    return [unit[start : start + max_size] for start in range(0, len(unit), step)]


def _overlap_tail(parts: list[str], joiner: str, overlap: int) -> list[str]:
    if overlap <= 0:
        return []
    tail: list[str] = []
    size = 0
    for part in reversed(parts):
        added = len(part) + (len(joiner) if tail else 0)
        if size + added > overlap:
            break
        tail.insert(0, part)
        size += added
    return tail


class IngestionService:
    """Split, embed and store documents; search them by query text."""

    def __init__(
        self,
        embedding_model: EmbeddingModel,
        store: VectorStore,
        splitter: DocumentSplitter = DocumentSplitter.RECURSIVE,
        max_segment_size: int = 500,
        overlap: int = 0,
    ) -> None:
        self._embedding_model = embedding_model
        self._store = store
        self._splitter = splitter
        self._max_segment_size = max_segment_size
        self._overlap = overlap

    async def ingest(self, documents: Sequence[Document]) -> IngestionResult:
        result = IngestionResult()
        for document in documents:
            segments = split_text(
                document.text, self._splitter, self._max_segment_size, self._overlap
            )
            if not segments:
                continue
            document_id = document.id or uuid.uuid4().hex
            vectors = await self._embedding_model.embed_texts(segments)
            for index, (segment, vector) in enumerate(zip(segments, vectors)):
                segment_id = f"{document_id}:{index}"
                metadata = {**document.metadata, "document_id": document_id, "index": index}
                await self._store.upsert(segment_id, vector, metadata, text=segment)
                result.segment_ids.append(segment_id)
            result.document_count += 1
            result.segment_count += len(segments)
        logger.info(
            "Ingested %d documents as %d segments", result.document_count, result.segment_count
        )
        return result

    async def search(
        self, query: str, max_results: int = 3, min_score: float = 0.0
    ) -> list[VectorMatch]:
        vector = await self._embedding_model.embed(query)
        return await self._store.search(vector, max_results=max_results, min_score=min_score)
