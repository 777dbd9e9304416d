from __future__ import annotations

import pytest

from conftest import StubProvider, reply
from turnflow.core.errors import ConversationValidationError
from turnflow.domain.schema import ResponseSchema
from turnflow.domain.types import ChatMessageType, GenerationConfig
from turnflow.services.orchestrator import ConversationOrchestrator
from turnflow.services.structured import StructuredTaskService


@pytest.fixture
def service(settings):
    return StructuredTaskService(ConversationOrchestrator(settings))


@pytest.mark.anyio
async def test_classify_normalizes_answer_to_class(service):
    provider = StubProvider([reply("Positive.")])

    output = await service.classify("I love it", ["positive", "negative"], provider)

    assert output.completion == "positive"
    assert output.history[-1].text == "positive"
    system = provider.requests[0].messages[0]
    assert system.role == "system"
    assert "['positive', 'negative']" in system.content


@pytest.mark.anyio
async def test_classify_keeps_unmatched_answer(service):
    provider = StubProvider([reply("I cannot decide")])

    output = await service.classify("meh", ["positive", "negative"], provider)

    assert output.completion == "I cannot decide"


@pytest.mark.anyio
async def test_classify_requires_classes(service):
    with pytest.raises(ConversationValidationError) as exc_info:
        await service.classify("x", [" ", ""], StubProvider())

    assert exc_info.value.code == "CLASSES_REQUIRED"


@pytest.mark.anyio
async def test_extract_forces_json_schema_and_filters_fields(service):
    provider = StubProvider([reply('```json\n{"name": "Ada", "city": "London"}\n```')])
    schema = ResponseSchema.of([("name", "string"), ("age", "integer")])

    output = await service.extract(
        "Ada lives in London.", schema, provider, GenerationConfig(temperature=0.0)
    )

    assert output.json_output == {"name": "Ada", "age": None}
    config = provider.configs[0]
    assert config.temperature == 0.0
    assert config.response_format.is_json
    assert config.response_format.schema == schema
    assert output.history[0].type == ChatMessageType.SYSTEM
