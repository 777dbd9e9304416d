from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from turnflow.core.errors import ProviderError
from turnflow.domain.types import (
    ChatRequest,
    ChatResponse,
    FinishReason,
    GenerationConfig,
    ModelMessage,
    TokenUsage,
    ToolExecutionRequest,
)
from turnflow.providers.base import (
    HTTPModelProvider,
    get_int,
    map_finish_reason,
    require_api_key,
)

FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "safety": FinishReason.CONTENT_FILTER,
    "recitation": FinishReason.CONTENT_FILTER,
    "blocklist": FinishReason.CONTENT_FILTER,
    "prohibited_content": FinishReason.CONTENT_FILTER,
    "spii": FinishReason.CONTENT_FILTER,
}

# Gemini's schema dialect rejects these JSON-schema keywords.
_UNSUPPORTED_SCHEMA_KEYS = {"additionalProperties", "$schema", "strict"}


class GeminiProvider(HTTPModelProvider):
    """Adapter for the Google Gemini API (chat and embeddings, no images)."""

    name = "gemini"
    supports_embeddings = True

    async def complete(self, config: GenerationConfig, request: ChatRequest) -> ChatResponse:
        model_name = self._normalize_model(self.cfg.model_name)
        payload = self._build_payload(config, request)
        data = await self._request_json(
            "POST",
            self._join_url(f"/v1beta/{model_name}:generateContent", "/v1beta"),
            headers=self._auth_headers(),
            json=payload,
            log_request=config.log_requests,
            log_response=config.log_responses,
        )
        candidates = data.get("candidates", [])
        if not candidates:
            raise ProviderError("PROVIDER_PARSE_ERROR", "No candidates returned by provider.")
        candidate = candidates[0]
        parts = candidate.get("content", {}).get("parts", [])
        texts = [part.get("text") for part in parts if part.get("text")]
        tool_requests = tuple(
            self._parse_function_call(index, part["functionCall"])
            for index, part in enumerate(parts)
            if isinstance(part.get("functionCall"), dict)
        )
        if not texts and not tool_requests:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        finish_reason = map_finish_reason(candidate.get("finishReason"), FINISH_REASONS)
        if tool_requests:
            finish_reason = FinishReason.TOOL_EXECUTION
        usage = data.get("usageMetadata", {})
        return ChatResponse(
            text="\n".join(texts),
            finish_reason=finish_reason,
            token_usage=TokenUsage(
                input_tokens=get_int(usage, "promptTokenCount"),
                output_tokens=get_int(usage, "candidatesTokenCount"),
                total_tokens=get_int(usage, "totalTokenCount"),
            ),
            tool_requests=tool_requests,
            id=data.get("responseId"),
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        model_name = self._normalize_model(self.cfg.model_name)
        payload = {
            "requests": [
                {"model": model_name, "content": {"parts": [{"text": text}]}} for text in texts
            ]
        }
        data = await self._request_json(
            "POST",
            self._join_url(f"/v1beta/{model_name}:batchEmbedContents", "/v1beta"),
            headers=self._auth_headers(),
            json=payload,
        )
        rows = data.get("embeddings")
        if not isinstance(rows, list) or len(rows) != len(texts):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Embedding response shape is invalid.")
        return [[float(value) for value in row.get("values", [])] for row in rows]

    def _auth_headers(self) -> dict[str, str]:
        return {"x-goog-api-key": require_api_key(self.cfg.api_key, "Gemini")}

    @staticmethod
    def _normalize_model(model_name: str) -> str:
        if model_name.startswith("models/"):
            return model_name
        return f"models/{model_name}"

    def _build_payload(self, config: GenerationConfig, request: ChatRequest) -> dict[str, Any]:
        system_text = None
        contents: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system" and system_text is None:
                system_text = message.content
                continue
            contents.append(self._map_message(message))
        payload: dict[str, Any] = {
            "contents": contents or [{"role": "user", "parts": [{"text": ""}]}]
        }
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": _strip_schema(tool.parameters),
                        }
                        for tool in request.tools
                    ]
                }
            ]
        generation_config = self._build_generation_config(config)
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    @staticmethod
    def _map_message(message: ModelMessage) -> dict[str, Any]:
        if message.role == "tool":
            return {
                "role": "user",
                "parts": [
                    {
                        "functionResponse": {
                            "name": message.name,
                            "response": {"content": message.content},
                        }
                    }
                ],
            }
        role = "user" if message.role == "user" else "model"
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"text": message.content})
        for call in message.tool_calls:
            try:
                args = json.loads(call.arguments) if call.arguments.strip() else {}
            except ValueError:
                args = {}
            parts.append({"functionCall": {"name": call.name, "args": args}})
        return {"role": role, "parts": parts or [{"text": ""}]}

    @staticmethod
    def _build_generation_config(config: GenerationConfig) -> dict[str, Any]:
        generation: dict[str, Any] = {}
        if config.temperature is not None:
            generation["temperature"] = config.temperature
        if config.top_k is not None:
            generation["topK"] = config.top_k
        if config.top_p is not None:
            generation["topP"] = config.top_p
        if config.seed is not None:
            generation["seed"] = config.seed
        if config.max_tokens is not None:
            generation["maxOutputTokens"] = config.max_tokens
        response_format = config.response_format
        if response_format is not None and response_format.is_json:
            generation["responseMimeType"] = "application/json"
            if response_format.schema is not None:
                generation["responseSchema"] = _strip_schema(
                    response_format.schema.to_json_schema()
                )
        return generation

    @staticmethod
    def _parse_function_call(index: int, call: dict[str, Any]) -> ToolExecutionRequest:
        name = call.get("name", "")
        return ToolExecutionRequest(
            id=call.get("id") or f"{name}-{index}",
            name=name,
            arguments=json.dumps(call.get("args") or {}),
        )


def _strip_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {
            key: _strip_schema(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [_strip_schema(item) for item in schema]
    return schema
