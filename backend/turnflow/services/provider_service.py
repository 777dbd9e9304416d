from __future__ import annotations

from typing import Callable, Optional

import httpx

from turnflow.core.config import Settings, get_settings
from turnflow.core.errors import ProviderError
from turnflow.providers.base import HTTPModelProvider, ModelProvider, ProviderRuntimeConfig
from turnflow.providers.deepseek_adapter import DeepSeekProvider
from turnflow.providers.gemini_adapter import GeminiProvider
from turnflow.providers.ollama_adapter import OllamaProvider
from turnflow.providers.openai_adapter import OpenAIProvider

SUPPORTED_PROVIDERS = ("openai", "ollama", "deepseek", "gemini")

ProviderFactory = Callable[[ProviderRuntimeConfig], ModelProvider]


class ProviderService:
    """Build model providers from a vendor name and runtime configuration."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        factories: Optional[dict[str, ProviderFactory]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._factories = factories or {
            "openai": self._http_factory(OpenAIProvider),
            "ollama": self._http_factory(OllamaProvider),
            "deepseek": self._http_factory(DeepSeekProvider),
            "gemini": self._http_factory(GeminiProvider),
        }

    def set_factories(self, factories: dict[str, ProviderFactory]) -> None:
        """Override provider factories (useful for tests)."""

        self._factories = factories

    def build(
        self,
        provider: str,
        model_name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> ModelProvider:
        """Return a provider bound to one model."""

        provider = self._normalize_provider(provider)
        model_name = model_name.strip()
        if not model_name:
            raise ProviderError("PROVIDER_MODEL_INVALID", "Model name must not be empty.")
        factory = self._factories.get(provider)
        if factory is None:
            raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")
        runtime_cfg = ProviderRuntimeConfig(
            provider=provider,
            model_name=model_name,
            base_url=base_url or self._default_base_url(provider),
            api_key=api_key,
        )
        return factory(runtime_cfg)

    def _http_factory(self, provider_cls: type[HTTPModelProvider]) -> ProviderFactory:
        def factory(cfg: ProviderRuntimeConfig) -> ModelProvider:
            return provider_cls(
                cfg,
                timeout_sec=self._settings.provider_timeout_sec,
                http_client=self._http_client,
            )

        return factory

    def _default_base_url(self, provider: str) -> str:
        if provider == "openai":
            return self._settings.openai_base_url
        if provider == "ollama":
            return self._settings.ollama_base_url
        if provider == "deepseek":
            return self._settings.deepseek_base_url
        if provider == "gemini":
            return self._settings.gemini_base_url
        raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")

    def _normalize_provider(self, provider: str) -> str:
        normalized = provider.strip().lower()
        if normalized not in SUPPORTED_PROVIDERS and normalized not in self._factories:
            raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")
        return normalized
