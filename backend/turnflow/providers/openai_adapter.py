from __future__ import annotations

import json
import uuid
from collections.abc import Sequence
from typing import Any, Optional

from turnflow.core.errors import ProviderError
from turnflow.domain.types import (
    ChatRequest,
    ChatResponse,
    FinishReason,
    GeneratedImage,
    GenerationConfig,
    ModelMessage,
    TokenUsage,
    ToolExecutionRequest,
    ToolSpecification,
)
from turnflow.providers.base import (
    HTTPModelProvider,
    get_int,
    map_finish_reason,
    require_api_key,
)

FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_EXECUTION,
    "function_call": FinishReason.TOOL_EXECUTION,
    "content_filter": FinishReason.CONTENT_FILTER,
}


class OpenAICompatibleProvider(HTTPModelProvider):
    """Chat mapping shared by vendors exposing the chat-completions API."""

    chat_path = "/v1/chat/completions"
    api_prefix = "/v1"
    supports_json_schema = True

    async def complete(self, config: GenerationConfig, request: ChatRequest) -> ChatResponse:
        if config.top_k is not None:
            raise ProviderError(
                "PROVIDER_INVALID_PARAMETER", f"{self.name} models do not support top_k."
            )
        payload = self._build_chat_payload(config, request)
        data = await self._request_json(
            "POST",
            self._join_url(self.chat_path, self.api_prefix),
            headers=self._auth_headers(),
            json=payload,
            log_request=config.log_requests,
            log_response=config.log_responses,
        )
        return self._parse_chat_response(data)

    def _build_chat_payload(self, config: GenerationConfig, request: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.cfg.model_name,
            "messages": [self._map_message(message) for message in request.messages],
        }
        if request.tools:
            payload["tools"] = [self._map_tool(tool) for tool in request.tools]
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        if config.seed is not None:
            payload["seed"] = config.seed
        if config.max_tokens is not None:
            payload["max_tokens"] = config.max_tokens
        response_format = config.response_format
        if response_format is not None and response_format.is_json:
            if response_format.schema is not None and self.supports_json_schema:
                payload["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {
                        "name": response_format.schema.name,
                        "schema": response_format.schema.to_json_schema(),
                        "strict": True,
                    },
                }
            else:
                payload["response_format"] = {"type": "json_object"}
        return payload

    @staticmethod
    def _map_message(message: ModelMessage) -> dict[str, Any]:
        if message.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message.content,
            }
        mapped: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            mapped["content"] = message.content or None
            mapped["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        return mapped

    @staticmethod
    def _map_tool(tool: ToolSpecification) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }

    def _parse_chat_response(self, data: dict[str, Any]) -> ChatResponse:
        choices = data.get("choices", [])
        if not choices:
            raise ProviderError("PROVIDER_PARSE_ERROR", "No choices returned by provider.")
        choice = choices[0]
        message = choice.get("message", {})
        content = message.get("content") or ""
        tool_requests = tuple(
            self._parse_tool_call(call) for call in message.get("tool_calls") or []
        )
        if not content and not tool_requests:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        finish_reason = map_finish_reason(choice.get("finish_reason"), FINISH_REASONS)
        if tool_requests:
            finish_reason = FinishReason.TOOL_EXECUTION
        usage = data.get("usage", {})
        return ChatResponse(
            text=content,
            finish_reason=finish_reason,
            token_usage=self._parse_usage(usage),
            tool_requests=tool_requests,
            id=data.get("id"),
        )

    @staticmethod
    def _parse_tool_call(call: dict[str, Any]) -> ToolExecutionRequest:
        function = call.get("function", {})
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        return ToolExecutionRequest(
            id=call.get("id") or uuid.uuid4().hex,
            name=function.get("name", ""),
            arguments=arguments or "{}",
        )

    @staticmethod
    def _parse_usage(usage: Any) -> Optional[TokenUsage]:
        if not isinstance(usage, dict) or not usage:
            return None
        return TokenUsage(
            input_tokens=get_int(usage, "prompt_tokens"),
            output_tokens=get_int(usage, "completion_tokens"),
            total_tokens=get_int(usage, "total_tokens"),
        )

    def _auth_headers(self) -> dict[str, str]:
        api_key = require_api_key(self.cfg.api_key, self.name)
        return {"Authorization": f"Bearer {api_key}"}


class OpenAIProvider(OpenAICompatibleProvider):
    """Adapter for OpenAI-compatible APIs (chat, embeddings, images)."""

    name = "openai"
    supports_embeddings = True
    supports_images = True

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        payload = {"model": self.cfg.model_name, "input": list(texts)}
        data = await self._request_json(
            "POST",
            self._join_url("/v1/embeddings", self.api_prefix),
            headers=self._auth_headers(),
            json=payload,
        )
        rows = data.get("data")
        if not isinstance(rows, list) or len(rows) != len(texts):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Embedding response shape is invalid.")
        rows = sorted(rows, key=lambda row: row.get("index", 0) if isinstance(row, dict) else 0)
        vectors: list[list[float]] = []
        for row in rows:
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(embedding, list):
                raise ProviderError("PROVIDER_PARSE_ERROR", "Embedding row is missing vector data.")
            vectors.append([float(value) for value in embedding])
        return vectors

    async def generate_image(self, prompt: str) -> GeneratedImage:
        payload = {"model": self.cfg.model_name, "prompt": prompt, "n": 1}
        data = await self._request_json(
            "POST",
            self._join_url("/v1/images/generations", self.api_prefix),
            headers=self._auth_headers(),
            json=payload,
        )
        rows = data.get("data")
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "No image returned by provider.")
        image = rows[0]
        if not image.get("url") and not image.get("b64_json"):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Image payload is empty.")
        return GeneratedImage(
            url=image.get("url"),
            b64_json=image.get("b64_json"),
            revised_prompt=image.get("revised_prompt"),
        )
