from __future__ import annotations

import json

import httpx
import pytest

from turnflow.core.config import Settings
from turnflow.core.errors import CapabilityNotSupportedError, ProviderError
from turnflow.domain.schema import ResponseFormat, ResponseSchema
from turnflow.domain.types import (
    ChatRequest,
    FinishReason,
    GenerationConfig,
    ModelMessage,
    ToolExecutionRequest,
    ToolSpecification,
)
from turnflow.providers.base import ProviderRuntimeConfig
from turnflow.providers.deepseek_adapter import DeepSeekProvider
from turnflow.providers.gemini_adapter import GeminiProvider
from turnflow.providers.ollama_adapter import OllamaProvider
from turnflow.providers.openai_adapter import OpenAIProvider
from turnflow.services.provider_service import ProviderService

HELLO = ChatRequest(
    messages=(ModelMessage("system", "Be brief."), ModelMessage("user", "hi")),
)


def _cfg(provider: str, base_url: str, api_key: str | None = "sk-test") -> ProviderRuntimeConfig:
    return ProviderRuntimeConfig(
        provider=provider, model_name="test-model", base_url=base_url, api_key=api_key
    )


@pytest.mark.anyio
async def test_openai_chat_maps_config_tools_and_usage():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "choices": [
                    {
                        "finish_reason": "tool_calls",
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "add", "arguments": '{"a": 1}'},
                                }
                            ],
                        },
                    }
                ],
                "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12},
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = OpenAIProvider(_cfg("openai", "https://api.openai.com/v1"), http_client=client)
        model = provider.chat_model(GenerationConfig(temperature=0.2, seed=7, max_tokens=64))
        request = ChatRequest(
            messages=HELLO.messages,
            tools=(ToolSpecification(name="add", description="Add numbers."),),
        )
        response = await model.chat(request)

    payload = seen[0]
    assert payload["model"] == "test-model"
    assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
    assert payload["temperature"] == 0.2
    assert payload["seed"] == 7
    assert payload["max_tokens"] == 64
    assert payload["tools"][0]["function"]["name"] == "add"
    assert response.id == "chatcmpl-1"
    assert response.finish_reason == FinishReason.TOOL_EXECUTION
    assert response.tool_requests == (ToolExecutionRequest("call_1", "add", '{"a": 1}'),)
    assert response.token_usage.total_tokens == 12


@pytest.mark.anyio
async def test_openai_sends_tool_results_and_json_schema():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200, json={"choices": [{"finish_reason": "stop", "message": {"content": "{}"}}]}
        )

    call = ToolExecutionRequest("call_1", "add", '{"a": 1}')
    request = ChatRequest(
        messages=(
            ModelMessage("user", "add"),
            ModelMessage("assistant", "", tool_calls=(call,)),
            ModelMessage("tool", "2", tool_call_id="call_1", name="add"),
        )
    )
    schema = ResponseSchema.of([("name", "string")])
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = OpenAIProvider(_cfg("openai", "https://api.openai.com"), http_client=client)
        config = GenerationConfig(response_format=ResponseFormat.json(schema))
        response = await provider.chat_model(config).chat(request)

    payload = seen[0]
    assert payload["messages"][1]["content"] is None
    assert payload["messages"][1]["tool_calls"][0]["id"] == "call_1"
    assert payload["messages"][2] == {"role": "tool", "tool_call_id": "call_1", "content": "2"}
    assert payload["response_format"]["type"] == "json_schema"
    assert payload["response_format"]["json_schema"]["schema"]["required"] == ["name"]
    assert response.finish_reason == FinishReason.STOP
    assert response.token_usage is None


@pytest.mark.anyio
async def test_openai_rejects_top_k():
    provider = OpenAIProvider(_cfg("openai", "https://api.openai.com"))

    with pytest.raises(ProviderError) as exc_info:
        await provider.chat_model(GenerationConfig(top_k=5)).chat(HELLO)

    assert exc_info.value.code == "PROVIDER_INVALID_PARAMETER"


@pytest.mark.anyio
async def test_openai_embeddings_follow_input_order():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/embeddings"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 2.0]},
                    {"index": 0, "embedding": [3.0, 0.0]},
                ]
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = OpenAIProvider(_cfg("openai", "https://api.openai.com"), http_client=client)
        embedder = provider.embedding_model()
        vectors = await embedder.embed_texts(["first", "second"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert embedder.dimension == 2


@pytest.mark.anyio
async def test_openai_image_generation():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/images/generations"
        assert json.loads(request.content)["prompt"] == "a lighthouse"
        return httpx.Response(200, json={"data": [{"url": "https://img.test/1.png"}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = OpenAIProvider(_cfg("openai", "https://api.openai.com"), http_client=client)
        image = await provider.image_model().generate("a lighthouse")

    assert image.url == "https://img.test/1.png"


@pytest.mark.anyio
async def test_deepseek_uses_root_chat_path_and_json_object():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/chat/completions"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "choices": [{"finish_reason": "stop", "message": {"content": "hello from deepseek"}}],
                "usage": {"prompt_tokens": 4, "completion_tokens": 9},
            },
        )

    schema = ResponseSchema.of([("name", "string")])
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = DeepSeekProvider(_cfg("deepseek", "https://api.deepseek.com"), http_client=client)
        config = GenerationConfig(response_format=ResponseFormat.json(schema))
        response = await provider.chat_model(config).chat(HELLO)

    assert seen[0]["response_format"] == {"type": "json_object"}
    assert response.text == "hello from deepseek"
    assert response.token_usage.input_tokens == 4
    assert response.token_usage.output_tokens == 9


@pytest.mark.anyio
async def test_ollama_chat_options_and_tool_calls():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "message": {
                    "content": "",
                    "tool_calls": [{"function": {"name": "add", "arguments": {"a": 1}}}],
                },
                "done_reason": "stop",
                "prompt_eval_count": 3,
                "eval_count": 4,
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = OllamaProvider(_cfg("ollama", "http://localhost:11434", None), http_client=client)
        config = GenerationConfig(top_k=40, max_tokens=32, response_format=ResponseFormat.json())
        response = await provider.chat_model(config).chat(HELLO)

    payload = seen[0]
    assert payload["stream"] is False
    assert payload["options"] == {"top_k": 40, "num_predict": 32}
    assert payload["format"] == "json"
    assert response.finish_reason == FinishReason.TOOL_EXECUTION
    assert response.tool_requests[0].id == "call_0"
    assert json.loads(response.tool_requests[0].arguments) == {"a": 1}
    assert response.token_usage.total_tokens == 7


@pytest.mark.anyio
async def test_ollama_embeddings():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/embed"
        return httpx.Response(200, json={"embeddings": [[0.0, 5.0]]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = OllamaProvider(_cfg("ollama", "http://localhost:11434/api"), http_client=client)
        vector = await provider.embedding_model().embed("hi")

    assert vector == [0.0, 1.0]


@pytest.mark.anyio
async def test_gemini_generate_content_maps_request_and_function_calls():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert not request.url.query
        assert request.headers.get("x-goog-api-key") == "sk-test"
        assert request.url.path == "/v1beta/models/test-model:generateContent"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "responseId": "resp-1",
                "candidates": [
                    {
                        "finishReason": "STOP",
                        "content": {
                            "parts": [
                                {"text": "checking"},
                                {"functionCall": {"name": "add", "args": {"a": 1}}},
                            ]
                        },
                    }
                ],
                "usageMetadata": {
                    "promptTokenCount": 6,
                    "candidatesTokenCount": 8,
                    "totalTokenCount": 14,
                },
            },
        )

    schema = ResponseSchema.of([("name", "string")])
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = GeminiProvider(
            _cfg("gemini", "https://generativelanguage.googleapis.com"), http_client=client
        )
        config = GenerationConfig(top_k=3, response_format=ResponseFormat.json(schema))
        request = ChatRequest(messages=HELLO.messages, tools=(ToolSpecification(name="add"),))
        response = await provider.chat_model(config).chat(request)

    payload = seen[0]
    assert payload["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert payload["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert payload["tools"][0]["functionDeclarations"][0]["name"] == "add"
    generation = payload["generationConfig"]
    assert generation["topK"] == 3
    assert generation["responseMimeType"] == "application/json"
    assert "additionalProperties" not in generation["responseSchema"]
    assert response.id == "resp-1"
    assert response.text == "checking"
    assert response.finish_reason == FinishReason.TOOL_EXECUTION
    assert response.tool_requests[0].name == "add"
    assert response.token_usage.total_tokens == 14


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("MAX_TOKENS", FinishReason.LENGTH),
        ("SAFETY", FinishReason.CONTENT_FILTER),
        ("SOMETHING_NEW", FinishReason.OTHER),
    ],
)
async def test_gemini_finish_reason_mapping(raw, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"candidates": [{"finishReason": raw, "content": {"parts": [{"text": "x"}]}}]},
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = GeminiProvider(
            _cfg("gemini", "https://generativelanguage.googleapis.com"), http_client=client
        )
        response = await provider.chat_model().chat(HELLO)

    assert response.finish_reason == expected


@pytest.mark.anyio
async def test_gemini_batch_embeddings():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1beta/models/text-embedding-004:batchEmbedContents"
        body = json.loads(request.content)
        assert len(body["requests"]) == 2
        return httpx.Response(
            200, json={"embeddings": [{"values": [1.0, 0.0]}, {"values": [0.0, 2.0]}]}
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        cfg = ProviderRuntimeConfig(
            provider="gemini",
            model_name="models/text-embedding-004",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            api_key="sk-test",
        )
        provider = GeminiProvider(cfg, http_client=client)
        vectors = await provider.embedding_model().embed_texts(["a", "b"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]


@pytest.mark.parametrize(
    ("provider", "capability"),
    [
        (DeepSeekProvider(_cfg("deepseek", "https://api.deepseek.com")), "embedding"),
        (DeepSeekProvider(_cfg("deepseek", "https://api.deepseek.com")), "image"),
        (OllamaProvider(_cfg("ollama", "http://localhost:11434")), "image"),
        (GeminiProvider(_cfg("gemini", "https://generativelanguage.googleapis.com")), "image"),
    ],
)
def test_missing_capabilities_raise(provider, capability):
    with pytest.raises(CapabilityNotSupportedError) as exc_info:
        if capability == "embedding":
            provider.embedding_model()
        else:
            provider.image_model()

    assert exc_info.value.code == "CAPABILITY_NOT_SUPPORTED"
    assert exc_info.value.capability == capability


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("provider_cls", "base_url", "api_key"),
    [
        (OpenAIProvider, "https://api.openai.com", "sk-openai"),
        (OllamaProvider, "http://localhost:11434", None),
        (DeepSeekProvider, "https://api.deepseek.com", "sk-deepseek"),
        (GeminiProvider, "https://generativelanguage.googleapis.com", "sk-gemini"),
    ],
)
async def test_rate_limit_is_retryable(provider_cls, base_url, api_key):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "rate limited"}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        provider = provider_cls(_cfg("x", base_url, api_key), http_client=client)
        with pytest.raises(ProviderError) as exc_info:
            await provider.chat_model().chat(HELLO)

    assert exc_info.value.code == "PROVIDER_RATE_LIMIT"
    assert exc_info.value.retryable is True
    assert "rate limited" in exc_info.value.message


@pytest.mark.anyio
async def test_missing_api_key_is_reported():
    provider = OpenAIProvider(_cfg("openai", "https://api.openai.com", None))

    with pytest.raises(ProviderError) as exc_info:
        await provider.chat_model().chat(HELLO)

    assert exc_info.value.code == "API_KEY_REQUIRED"


def test_provider_service_builds_each_vendor():
    service = ProviderService(settings=Settings())

    openai = service.build(" OpenAI ", "gpt-4o-mini", api_key="sk")
    gemini = service.build("gemini", "gemini-1.5-flash", base_url="https://gemini.test")

    assert isinstance(openai, OpenAIProvider)
    assert openai.cfg.base_url == Settings().openai_base_url
    assert isinstance(gemini, GeminiProvider)
    assert gemini.cfg.base_url == "https://gemini.test"
    assert gemini.model_name == "gemini-1.5-flash"


@pytest.mark.parametrize(
    ("provider", "model", "code"),
    [("mistral", "m", "PROVIDER_UNSUPPORTED"), ("openai", "  ", "PROVIDER_MODEL_INVALID")],
)
def test_provider_service_rejects_bad_input(provider, model, code):
    with pytest.raises(ProviderError) as exc_info:
        ProviderService(settings=Settings()).build(provider, model)

    assert exc_info.value.code == code
