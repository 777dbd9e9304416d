from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from turnflow.schemas.chat import ProviderSpec
from turnflow.schemas.common import APIModel


class ImageRequest(APIModel):
    provider: ProviderSpec
    prompt: str = Field(min_length=1)


class ImageResponse(APIModel):
    url: Optional[str] = None
    b64_json: Optional[str] = None
    revised_prompt: Optional[str] = None


class DocumentIn(APIModel):
    id: Optional[str] = None
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IngestRequest(APIModel):
    """Documents to split, embed and store in one collection."""

    collection: str = "default"
    documents: List[DocumentIn] = Field(min_length=1)
    splitter: Literal["RECURSIVE", "PARAGRAPH", "LINE", "SENTENCE", "WORD"] = "RECURSIVE"
    max_segment_size: int = Field(default=500, ge=1)
    overlap: int = Field(default=0, ge=0)
    embedding: Optional[ProviderSpec] = None
    drop_existing: bool = False


class IngestResponse(APIModel):
    document_count: int
    segment_count: int
    segment_ids: List[str]


class SearchRequest(APIModel):
    collection: str = "default"
    query: str = Field(min_length=1)
    max_results: int = Field(default=3, ge=1)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)
    embedding: Optional[ProviderSpec] = None


class SearchMatchOut(APIModel):
    id: str
    text: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(APIModel):
    matches: List[SearchMatchOut]
