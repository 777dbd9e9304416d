from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")
    db_url: str = Field(default="sqlite+aiosqlite:///./turnflow.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")
    deepseek_base_url: str = Field(default="https://api.deepseek.com", alias="DEEPSEEK_BASE_URL")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com", alias="GEMINI_BASE_URL"
    )
    provider_timeout_sec: float = Field(default=90.0, alias="PROVIDER_TIMEOUT_SEC")

    memory_max_messages: int = Field(default=10, alias="MEMORY_MAX_MESSAGES")
    memory_ttl_sec: int = Field(default=3600, alias="MEMORY_TTL_SEC")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    max_tool_round_trips: int = Field(default=10, alias="MAX_TOOL_ROUND_TRIPS")
    tool_timeout_sec: float = Field(default=60.0, alias="TOOL_TIMEOUT_SEC")

    retriever_max_results: int = Field(default=3, alias="RETRIEVER_MAX_RESULTS")
    retriever_min_score: float = Field(default=0.0, alias="RETRIEVER_MIN_SCORE")
    retrieval_max_chars: int = Field(default=8000, alias="RETRIEVAL_MAX_CHARS")
    tavily_base_url: str = Field(default="https://api.tavily.com", alias="TAVILY_BASE_URL")
    google_search_base_url: str = Field(
        default="https://www.googleapis.com", alias="GOOGLE_SEARCH_BASE_URL"
    )

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                import json

                value: Any = json.loads(raw)
                if isinstance(value, list):
                    items = [str(item).strip() for item in value]
                    return [item for item in items if item]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
