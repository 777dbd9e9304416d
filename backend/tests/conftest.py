import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from collections.abc import Callable
from typing import Optional, Union

import httpx
import pytest

from turnflow.core.config import Settings, get_settings
from turnflow.db.base import create_engine, create_sessionmaker, init_db
from turnflow.domain.types import (
    ChatRequest,
    ChatResponse,
    FinishReason,
    GeneratedImage,
    GenerationConfig,
    TokenUsage,
)
from turnflow.main import create_app
from turnflow.providers.base import ModelProvider

Scripted = Union[ChatResponse, Callable[[ChatRequest], ChatResponse], Exception]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(MAX_TOOL_ROUND_TRIPS=3, RETRIEVAL_MAX_CHARS=4000)


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'turnflow_test.db'}")
    await init_db(engine)
    yield create_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def stub_provider():
    return StubProvider()


@pytest.fixture
def app(tmp_path, monkeypatch, stub_provider):
    db_path = tmp_path / "test_turnflow.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    get_settings.cache_clear()
    app = create_app()
    app.state.component_factory.provider_service.set_factories(
        {
            "openai": lambda cfg: stub_provider,
            "ollama": lambda cfg: StubProvider(name="ollama"),
            "deepseek": lambda cfg: StubProvider(name="deepseek", supports_images=False),
        }
    )
    yield app
    get_settings.cache_clear()


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.engine.dispose()


def reply(
    text: str,
    input_tokens: Optional[int] = 1,
    output_tokens: Optional[int] = 1,
    tool_requests: tuple = (),
) -> ChatResponse:
    return ChatResponse(
        text=text,
        finish_reason=FinishReason.TOOL_EXECUTION if tool_requests else FinishReason.STOP,
        token_usage=TokenUsage.of(input_tokens, output_tokens),
        tool_requests=tool_requests,
    )


class StubProvider(ModelProvider):
    """Provider stub used to avoid external API calls in tests.

    Scripted responses are consumed in order; once exhausted the stub echoes
    the final message it received.
    """

    def __init__(
        self,
        responses: Optional[list[Scripted]] = None,
        name: str = "openai",
        supports_images: bool = True,
    ) -> None:
        self.name = name
        self.supports_images = supports_images
        self.supports_embeddings = False
        self.responses = list(responses or [])
        self.requests: list[ChatRequest] = []
        self.configs: list[GenerationConfig] = []

    @property
    def model_name(self) -> str:
        return "stub-model"

    def script(self, *responses: Scripted) -> "StubProvider":
        self.responses.extend(responses)
        return self

    async def complete(self, config: GenerationConfig, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        self.configs.append(config)
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, Exception):
                raise item
            if callable(item):
                return item(request)
            return item
        return reply(f"echo: {request.messages[-1].content}")

    async def generate_image(self, prompt: str) -> GeneratedImage:
        return GeneratedImage(url=f"https://images.test/{len(prompt)}.png", revised_prompt=prompt)
