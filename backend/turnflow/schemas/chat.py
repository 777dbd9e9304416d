from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, model_validator

from turnflow.schemas.common import APIModel

ProviderName = Literal["openai", "ollama", "deepseek", "gemini"]
FieldType = Literal["string", "integer", "number", "boolean", "array", "object"]


class ProviderSpec(APIModel):
    """Model vendor and model selection."""

    provider: ProviderName
    model_name: str = Field(min_length=1)
    api_key: Optional[str] = Field(default=None)
    base_url: Optional[str] = Field(default=None)


class ChatMessageIn(APIModel):
    """One conversation message; accepts ``role``/``content`` as aliases."""

    type: str
    text: str

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "type" not in data and "role" in data:
                data["type"] = data.pop("role")
            if "text" not in data and "content" in data:
                data["text"] = data.pop("content")
        return data


class ChatMessageOut(APIModel):
    type: str
    text: str


class SchemaFieldIn(APIModel):
    name: str = Field(min_length=1)
    type: FieldType = "string"
    description: Optional[str] = None


class ResponseFormatIn(APIModel):
    type: Literal["TEXT", "JSON"] = "TEXT"
    fields: List[SchemaFieldIn] = Field(default_factory=list)
    schema_name: str = "output"


class ConfigurationIn(APIModel):
    """Generation parameters; unset values are left to the vendor."""

    temperature: Optional[float] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    seed: Optional[int] = None
    max_tokens: Optional[int] = None
    log_requests: bool = False
    log_responses: bool = False
    response_format: Optional[ResponseFormatIn] = None


class MemorySpec(APIModel):
    type: Literal["local", "kv", "redis"] = "local"
    memory_id: Optional[str] = None
    messages: int = Field(default=10, ge=1)
    ttl_sec: int = Field(default=3600, ge=1)
    drop: Literal["NEVER", "BEFORE_EXECUTION", "AFTER_EXECUTION"] = "NEVER"
    redis_url: Optional[str] = None


class ToolSpecIn(APIModel):
    type: Literal["stdio", "http", "web_search"]
    command: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    engine: Literal["tavily", "google"] = "tavily"
    api_key: Optional[str] = None
    csi: Optional[str] = None
    log_events: bool = False


class RetrieverSpec(APIModel):
    type: Literal["tavily", "google", "embedding_store"]
    api_key: Optional[str] = None
    csi: Optional[str] = None
    collection: str = "default"
    embedding: Optional[ProviderSpec] = None
    max_results: int = Field(default=3, ge=1)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)


class ChatCompletionRequest(APIModel):
    """Declarative description of one conversation turn."""

    provider: ProviderSpec
    messages: List[ChatMessageIn] = Field(min_length=1)
    configuration: ConfigurationIn = Field(default_factory=ConfigurationIn)
    memory: Optional[MemorySpec] = None
    memory_id: Optional[str] = None
    tools: List[ToolSpecIn] = Field(default_factory=list)
    retrievers: List[RetrieverSpec] = Field(default_factory=list)
    max_tool_round_trips: Optional[int] = Field(default=None, ge=0)


class TokenUsageOut(APIModel):
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class ToolExecutionOut(APIModel):
    request_id: str
    request_name: str
    request_arguments: Dict[str, Any]
    result: str


class ToolRequestOut(APIModel):
    id: str
    name: str
    arguments: str


class IntermediateResponseOut(APIModel):
    id: Optional[str]
    completion: str
    finish_reason: str
    token_usage: Optional[TokenUsageOut]
    tool_requests: List[ToolRequestOut]
    request_duration_ms: int


class TurnOutputOut(APIModel):
    """Result of one orchestrated turn."""

    completion: str
    finish_reason: str
    history: List[ChatMessageOut]
    token_usage: Optional[TokenUsageOut] = None
    tool_executions: List[ToolExecutionOut] = Field(default_factory=list)
    json_output: Optional[Dict[str, Any]] = None
    intermediate_responses: List[IntermediateResponseOut] = Field(default_factory=list)
    request_duration_ms: Optional[int] = None


class ClassifyRequest(APIModel):
    provider: ProviderSpec
    prompt: str = Field(min_length=1)
    classes: List[str] = Field(min_length=1)
    system_prompt: Optional[str] = None
    configuration: ConfigurationIn = Field(default_factory=ConfigurationIn)


class ExtractRequest(APIModel):
    provider: ProviderSpec
    text: str = Field(min_length=1)
    fields: List[SchemaFieldIn] = Field(min_length=1)
    schema_name: str = "output"
    configuration: ConfigurationIn = Field(default_factory=ConfigurationIn)
