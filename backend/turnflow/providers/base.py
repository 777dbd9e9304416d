from __future__ import annotations

import json as jsonlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

import httpx

from turnflow.core.errors import CapabilityNotSupportedError, ProviderError
from turnflow.core.security import truncate_text
from turnflow.domain.types import (
    ChatRequest,
    ChatResponse,
    FinishReason,
    GeneratedImage,
    GenerationConfig,
)
from turnflow.embeddings.embedder import EmbeddingModel, normalize_vector

logger = logging.getLogger(__name__)


@dataclass
class ProviderRuntimeConfig:
    """Runtime configuration needed by a model provider."""

    provider: str
    model_name: str
    base_url: str | None = None
    api_key: str | None = None


class ChatModel(Protocol):
    """Chat capability surface bound to one generation config."""

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Run one chat call."""


class ImageModel(Protocol):
    """Image generation capability surface."""

    async def generate(self, prompt: str) -> GeneratedImage:
        """Generate one image for the prompt."""


class ModelProvider(ABC):
    """Vendor-neutral factory for chat, embedding and image model handles.

    Concrete vendors only map parameters to their API; callers never branch
    on vendor identity and detect missing surfaces through
    ``CapabilityNotSupportedError``.
    """

    name: str = "provider"
    supports_embeddings: bool = False
    supports_images: bool = False

    def chat_model(self, config: GenerationConfig | None = None) -> ChatModel:
        """Return a chat handle configured with generation parameters."""

        return _ProviderChatModel(self, config or GenerationConfig())

    def embedding_model(self, dimension: int | None = None) -> EmbeddingModel:
        """Return an embedding handle, or fail if the vendor has none."""

        if not self.supports_embeddings:
            raise CapabilityNotSupportedError(self.name, "embedding")
        return _ProviderEmbeddingModel(self, dimension)

    def image_model(self) -> ImageModel:
        """Return an image handle, or fail if the vendor has none."""

        if not self.supports_images:
            raise CapabilityNotSupportedError(self.name, "image")
        return _ProviderImageModel(self)

    @property
    def model_name(self) -> str:
        return ""

    @abstractmethod
    async def complete(self, config: GenerationConfig, request: ChatRequest) -> ChatResponse:
        """Run one chat call against the vendor."""

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        raise CapabilityNotSupportedError(self.name, "embedding")

    async def generate_image(self, prompt: str) -> GeneratedImage:
        raise CapabilityNotSupportedError(self.name, "image")


class _ProviderChatModel:
    def __init__(self, provider: ModelProvider, config: GenerationConfig) -> None:
        self._provider = provider
        self.config = config

    async def chat(self, request: ChatRequest) -> ChatResponse:
        return await self._provider.complete(self.config, request)


class _ProviderImageModel:
    def __init__(self, provider: ModelProvider) -> None:
        self._provider = provider

    async def generate(self, prompt: str) -> GeneratedImage:
        return await self._provider.generate_image(prompt)


class _ProviderEmbeddingModel(EmbeddingModel):
    def __init__(self, provider: ModelProvider, dimension: int | None) -> None:
        self._provider = provider
        self.provider = provider.name
        self.model_name = provider.model_name
        self.dimension = dimension

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = await self._provider.embed(texts)
        if len(vectors) != len(texts):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Embedding count does not match inputs.")
        if self.dimension is None and vectors:
            self.dimension = len(vectors[0])
        return [normalize_vector(vector) for vector in vectors]


def build_status_error(response: httpx.Response) -> ProviderError:
    """Build a normalized provider error from an HTTP response."""

    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Provider returned {status}: {message}"
    if status in {408, 429}:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_RATE_LIMIT"
        return ProviderError(code, formatted, retryable=True, status_code=status)
    if status >= 500:
        return ProviderError(
            "PROVIDER_UPSTREAM",
            formatted,
            retryable=True,
            status_code=status,
        )
    return ProviderError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def require_api_key(api_key: Optional[str], provider_name: str) -> str:
    """Return an API key or raise a normalized configuration error."""

    if api_key:
        return api_key
    raise ProviderError("API_KEY_REQUIRED", f"API key is required for {provider_name}.")


def map_finish_reason(value: Any, mapping: Mapping[str, FinishReason]) -> FinishReason:
    """Map a vendor finish reason onto the shared enum."""

    if not isinstance(value, str):
        return FinishReason.OTHER
    return mapping.get(value.strip().lower(), FinishReason.OTHER)


def get_int(data: Any, key: str) -> Optional[int]:
    if not isinstance(data, dict):
        return None
    value = data.get(key)
    return int(value) if isinstance(value, int) else None


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from provider JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error from provider.").strip()


class HTTPModelProvider(ModelProvider):
    """Shared HTTP behavior for vendor adapters."""

    def __init__(
        self,
        cfg: ProviderRuntimeConfig,
        timeout_sec: float = 90,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.cfg = cfg
        self._timeout = timeout_sec
        self._client = http_client

    @property
    def model_name(self) -> str:
        return self.cfg.model_name

    def _join_url(self, path: str, api_prefix: str = "") -> str:
        if not self.cfg.base_url:
            raise ProviderError(
                "PROVIDER_BASE_URL_MISSING", f"Base URL is required for {self.name}."
            )
        base = self.cfg.base_url.rstrip("/")
        if api_prefix and base.endswith(api_prefix) and path.startswith(api_prefix + "/"):
            return base + path[len(api_prefix) :]
        return base + path

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
        log_request: bool = False,
        log_response: bool = False,
    ) -> dict[str, Any]:
        if log_request:
            logger.debug("%s request %s %s: %s", self.name, method, url, _dump(json))
        response = await self._request(method, url, headers=headers, json=json)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc
        if not isinstance(payload, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned invalid JSON payload.")
        if log_response:
            logger.debug("%s response: %s", self.name, _dump(payload))
        return payload

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            if self._client:
                response = await self._client.request(
                    method, url, headers=headers, json=json, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                "Provider connection failed.",
                retryable=True,
            ) from exc
        if response.status_code >= 400:
            raise build_status_error(response)
        return response


def _dump(payload: Any) -> str:
    try:
        text = jsonlib.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(payload)
    return truncate_text(text, 4000)
