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
from turnflow.providers.base import HTTPModelProvider, get_int, map_finish_reason

FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
}


class OllamaProvider(HTTPModelProvider):
    """Adapter for the Ollama local API (chat and embeddings, no images)."""

    name = "ollama"
    supports_embeddings = True

    async def complete(self, config: GenerationConfig, request: ChatRequest) -> ChatResponse:
        payload: dict[str, Any] = {
            "model": self.cfg.model_name,
            "messages": [self._map_message(message) for message in request.messages],
            "stream": False,
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
        options = self._build_options(config)
        if options:
            payload["options"] = options
        response_format = config.response_format
        if response_format is not None and response_format.is_json:
            payload["format"] = (
                response_format.schema.to_json_schema() if response_format.schema else "json"
            )

        data = await self._request_json(
            "POST",
            self._join_url("/api/chat", "/api"),
            json=payload,
            log_request=config.log_requests,
            log_response=config.log_responses,
        )
        message = data.get("message", {})
        content = message.get("content") or ""
        tool_requests = tuple(
            self._parse_tool_call(index, call)
            for index, call in enumerate(message.get("tool_calls") or [])
        )
        if not content and not tool_requests:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        finish_reason = map_finish_reason(data.get("done_reason"), FINISH_REASONS)
        if tool_requests:
            finish_reason = FinishReason.TOOL_EXECUTION
        return ChatResponse(
            text=content,
            finish_reason=finish_reason,
            token_usage=TokenUsage.of(
                get_int(data, "prompt_eval_count"), get_int(data, "eval_count")
            ),
            tool_requests=tool_requests,
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        payload = {"model": self.cfg.model_name, "input": list(texts)}
        data = await self._request_json("POST", self._join_url("/api/embed", "/api"), json=payload)
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Embedding response shape is invalid.")
        return [[float(value) for value in vector] for vector in embeddings]

    @staticmethod
    def _build_options(config: GenerationConfig) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if config.temperature is not None:
            options["temperature"] = config.temperature
        if config.top_k is not None:
            options["top_k"] = config.top_k
        if config.top_p is not None:
            options["top_p"] = config.top_p
        if config.seed is not None:
            options["seed"] = config.seed
        if config.max_tokens is not None:
            options["num_predict"] = config.max_tokens
        return options

    @staticmethod
    def _map_message(message: ModelMessage) -> dict[str, Any]:
        if message.role == "tool":
            return {"role": "tool", "content": message.content, "tool_name": message.name}
        mapped: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            mapped["tool_calls"] = [
                {"function": {"name": call.name, "arguments": _arguments_dict(call.arguments)}}
                for call in message.tool_calls
            ]
        return mapped

    @staticmethod
    def _parse_tool_call(index: int, call: dict[str, Any]) -> ToolExecutionRequest:
        function = call.get("function", {})
        arguments = function.get("arguments", {})
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        # Ollama does not assign call ids.
        return ToolExecutionRequest(
            id=call.get("id") or f"call_{index}",
            name=function.get("name", ""),
            arguments=arguments,
        )


def _arguments_dict(arguments: str) -> Any:
    try:
        return json.loads(arguments) if arguments.strip() else {}
    except ValueError:
        return {}
