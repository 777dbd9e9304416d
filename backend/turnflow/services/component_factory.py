from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from turnflow.core.config import Settings, get_settings
from turnflow.core.errors import ConversationValidationError
from turnflow.domain.schema import ResponseFormat, ResponseSchema, SchemaField
from turnflow.domain.types import ChatMessage, ChatMessageType, GenerationConfig
from turnflow.embeddings.embedder import DeterministicEmbedder, EmbeddingModel
from turnflow.embeddings.vector_store import SQLiteVectorStore
from turnflow.memory.base import Drop, MemoryProvider
from turnflow.memory.kv import KVMemoryProvider
from turnflow.memory.local import LocalMemoryProvider, LocalMemoryStore
from turnflow.memory.redis_memory import RedisMemoryProvider
from turnflow.providers.base import ModelProvider
from turnflow.retrieval.base import ContentRetriever
from turnflow.retrieval.embedding import EmbeddingStoreRetriever
from turnflow.retrieval.web import GoogleCustomWebSearchRetriever, TavilyWebSearchRetriever
from turnflow.schemas.chat import (
    ChatMessageIn,
    ConfigurationIn,
    MemorySpec,
    ProviderSpec,
    RetrieverSpec,
    SchemaFieldIn,
    ToolSpecIn,
)
from turnflow.services.provider_service import ProviderService
from turnflow.tools.base import ToolProvider
from turnflow.tools.http import HttpToolProvider
from turnflow.tools.stdio import StdioToolProvider
from turnflow.tools.web_search import WebSearchToolProvider

logger = logging.getLogger(__name__)


class ComponentFactory:
    """Turn request specs into providers, memory, tools and retrievers."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        local_store: Optional[LocalMemoryStore] = None,
        provider_service: Optional[ProviderService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.settings = settings or get_settings()
        self._local_store = local_store or LocalMemoryStore()
        self._http_client = http_client
        self.provider_service = provider_service or ProviderService(
            self.settings, http_client=http_client
        )

    def conversation(self, messages: Sequence[ChatMessageIn]) -> list[ChatMessage]:
        converted: list[ChatMessage] = []
        for message in messages:
            try:
                converted.append(ChatMessage(ChatMessageType.parse(message.type), message.text))
            except ValueError as exc:
                raise ConversationValidationError("MESSAGE_TYPE_INVALID", str(exc)) from exc
        return converted

    def provider(self, spec: ProviderSpec) -> ModelProvider:
        return self.provider_service.build(
            spec.provider, spec.model_name, api_key=spec.api_key, base_url=spec.base_url
        )

    def generation_config(self, spec: ConfigurationIn) -> GenerationConfig:
        response_format = None
        if spec.response_format is not None and spec.response_format.type == "JSON":
            schema = None
            if spec.response_format.fields:
                schema = self.response_schema(
                    spec.response_format.fields, spec.response_format.schema_name
                )
            response_format = ResponseFormat.json(schema)
        return GenerationConfig(
            temperature=spec.temperature,
            top_k=spec.top_k,
            top_p=spec.top_p,
            seed=spec.seed,
            max_tokens=spec.max_tokens,
            log_requests=spec.log_requests,
            log_responses=spec.log_responses,
            response_format=response_format,
        )

    @staticmethod
    def response_schema(fields: Sequence[SchemaFieldIn], name: str = "output") -> ResponseSchema:
        try:
            return ResponseSchema.of(
                [SchemaField(item.name, item.type, item.description) for item in fields],
                name=name,
            )
        except ValueError as exc:
            raise ConversationValidationError("SCHEMA_INVALID", str(exc)) from exc

    def memory(self, spec: Optional[MemorySpec]) -> Optional[MemoryProvider]:
        if spec is None:
            return None
        options = {
            "memory_id": spec.memory_id,
            "max_messages": spec.messages,
            "ttl": timedelta(seconds=spec.ttl_sec),
            "drop_policy": Drop(spec.drop),
        }
        if spec.type == "kv":
            return KVMemoryProvider(self._sessionmaker, **options)
        if spec.type == "redis":
            return RedisMemoryProvider(url=spec.redis_url or self.settings.redis_url, **options)
        return LocalMemoryProvider(store=self._local_store, **options)

    def tools(self, specs: Sequence[ToolSpecIn]) -> list[ToolProvider]:
        providers: list[ToolProvider] = []
        for spec in specs:
            if spec.type == "stdio":
                if not spec.command:
                    raise ConversationValidationError(
                        "TOOL_SPEC_INVALID", "A stdio tool needs a command."
                    )
                providers.append(
                    StdioToolProvider(
                        spec.command,
                        env=spec.env,
                        timeout_sec=self.settings.tool_timeout_sec,
                        log_events=spec.log_events,
                    )
                )
            elif spec.type == "http":
                if not spec.url:
                    raise ConversationValidationError(
                        "TOOL_SPEC_INVALID", "An http tool needs a url."
                    )
                providers.append(
                    HttpToolProvider(
                        spec.url,
                        headers=spec.headers,
                        timeout_sec=self.settings.tool_timeout_sec,
                        log_events=spec.log_events,
                    )
                )
            else:
                retriever = self._web_retriever(
                    spec.engine, spec.api_key, spec.csi, self.settings.retriever_max_results, 0.0
                )
                providers.append(WebSearchToolProvider(retriever))
        return providers

    def retrievers(self, specs: Sequence[RetrieverSpec]) -> list[ContentRetriever]:
        retrievers: list[ContentRetriever] = []
        for spec in specs:
            if spec.type == "embedding_store":
                retrievers.append(
                    EmbeddingStoreRetriever(
                        self.embedding_model(spec.embedding),
                        SQLiteVectorStore(self._sessionmaker, spec.collection),
                        max_results=spec.max_results,
                        min_score=spec.min_score,
                    )
                )
            else:
                retrievers.append(
                    self._web_retriever(
                        spec.type, spec.api_key, spec.csi, spec.max_results, spec.min_score
                    )
                )
        return retrievers

    def embedding_model(self, spec: Optional[ProviderSpec]) -> EmbeddingModel:
        """Vendor embedding model, or the offline deterministic embedder."""

        if spec is None:
            return DeterministicEmbedder()
        return self.provider(spec).embedding_model()

    def vector_store(self, collection: str) -> SQLiteVectorStore:
        return SQLiteVectorStore(self._sessionmaker, collection)

    def _web_retriever(
        self,
        engine: str,
        api_key: Optional[str],
        csi: Optional[str],
        max_results: int,
        min_score: float,
    ) -> ContentRetriever:
        options = {
            "max_results": max_results,
            "min_score": min_score,
            "http_client": self._http_client,
        }
        if engine == "google":
            return GoogleCustomWebSearchRetriever(
                api_key or "",
                csi or "",
                base_url=self.settings.google_search_base_url,
                **options,
            )
        return TavilyWebSearchRetriever(
            api_key or "", base_url=self.settings.tavily_base_url, **options
        )


def get_component_factory(request: Request) -> ComponentFactory:
    """Dependency to access the component factory from app state."""

    return request.app.state.component_factory
