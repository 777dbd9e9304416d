from __future__ import annotations

from fastapi import APIRouter, Depends

from turnflow.api.errors import to_http_exception
from turnflow.core.errors import ConversationValidationError, TurnflowError
from turnflow.embeddings.ingestion import Document, DocumentSplitter, IngestionService
from turnflow.schemas.media import (
    IngestRequest,
    IngestResponse,
    SearchMatchOut,
    SearchRequest,
    SearchResponse,
)
from turnflow.services.component_factory import ComponentFactory, get_component_factory

router = APIRouter(prefix="/api/embeddings", tags=["embeddings"])


@router.post("/ingest", response_model=IngestResponse)
async def ingest_documents(
    payload: IngestRequest,
    factory: ComponentFactory = Depends(get_component_factory),
) -> IngestResponse:
    """Split, embed and store documents in a collection."""

    if payload.overlap >= payload.max_segment_size:
        raise to_http_exception(
            ConversationValidationError(
                "INGEST_INVALID", "overlap must be smaller than max_segment_size"
            )
        )
    try:
        store = factory.vector_store(payload.collection)
        if payload.drop_existing:
            await store.clear()
        service = IngestionService(
            factory.embedding_model(payload.embedding),
            store,
            splitter=DocumentSplitter(payload.splitter),
            max_segment_size=payload.max_segment_size,
            overlap=payload.overlap,
        )
        result = await service.ingest(
            [Document(text=doc.text, id=doc.id, metadata=doc.metadata) for doc in payload.documents]
        )
    except TurnflowError as exc:
        raise to_http_exception(exc) from exc
    return IngestResponse(
        document_count=result.document_count,
        segment_count=result.segment_count,
        segment_ids=result.segment_ids,
    )


@router.post("/search", response_model=SearchResponse)
async def search_documents(
    payload: SearchRequest,
    factory: ComponentFactory = Depends(get_component_factory),
) -> SearchResponse:
    """Return stored segments closest to the query."""

    try:
        service = IngestionService(
            factory.embedding_model(payload.embedding), factory.vector_store(payload.collection)
        )
        matches = await service.search(
            payload.query, max_results=payload.max_results, min_score=payload.min_score
        )
    except TurnflowError as exc:
        raise to_http_exception(exc) from exc
    return SearchResponse(
        matches=[
            SearchMatchOut(id=match.id, text=match.text, score=match.score, metadata=match.metadata)
            for match in matches
        ]
    )
