from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from turnflow.api.errors import to_http_exception
from turnflow.core.errors import TurnflowError
from turnflow.domain.types import TokenUsage, TurnOutput, parse_json_object
from turnflow.schemas.chat import (
    ChatCompletionRequest,
    ChatMessageOut,
    ClassifyRequest,
    ExtractRequest,
    IntermediateResponseOut,
    TokenUsageOut,
    ToolExecutionOut,
    ToolRequestOut,
    TurnOutputOut,
)
from turnflow.services.component_factory import ComponentFactory, get_component_factory
from turnflow.services.orchestrator import ConversationOrchestrator
from turnflow.services.structured import StructuredTaskService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("/completion", response_model=TurnOutputOut)
async def chat_completion(
    payload: ChatCompletionRequest,
    factory: ComponentFactory = Depends(get_component_factory),
) -> TurnOutputOut:
    """Run one conversation turn."""

    try:
        conversation = factory.conversation(payload.messages)
        provider = factory.provider(payload.provider)
        retrievers = factory.retrievers(payload.retrievers)
        tools = factory.tools(payload.tools)
        memory = factory.memory(payload.memory)
        orchestrator = ConversationOrchestrator(factory.settings)
        output = await orchestrator.run(
            conversation,
            provider,
            factory.generation_config(payload.configuration),
            tools=tools,
            memory=memory,
            retrievers=retrievers,
            memory_id=payload.memory_id,
            max_tool_round_trips=payload.max_tool_round_trips,
        )
    except TurnflowError as exc:
        logger.warning("Chat completion failed: %s", exc)
        raise to_http_exception(exc) from exc
    return turn_output_out(output)


@router.post("/classify", response_model=TurnOutputOut)
async def classify(
    payload: ClassifyRequest,
    factory: ComponentFactory = Depends(get_component_factory),
) -> TurnOutputOut:
    """Classify a prompt into one of the given classes."""

    try:
        service = StructuredTaskService(ConversationOrchestrator(factory.settings))
        output = await service.classify(
            payload.prompt,
            payload.classes,
            factory.provider(payload.provider),
            factory.generation_config(payload.configuration),
            system_prompt=payload.system_prompt,
        )
    except TurnflowError as exc:
        raise to_http_exception(exc) from exc
    return turn_output_out(output)


@router.post("/extract", response_model=TurnOutputOut)
async def extract(
    payload: ExtractRequest,
    factory: ComponentFactory = Depends(get_component_factory),
) -> TurnOutputOut:
    """Extract the requested fields from a text as JSON."""

    try:
        service = StructuredTaskService(ConversationOrchestrator(factory.settings))
        output = await service.extract(
            payload.text,
            factory.response_schema(payload.fields, payload.schema_name),
            factory.provider(payload.provider),
            factory.generation_config(payload.configuration),
        )
    except TurnflowError as exc:
        raise to_http_exception(exc) from exc
    return turn_output_out(output)


def _usage_out(usage: TokenUsage | None) -> TokenUsageOut | None:
    if usage is None:
        return None
    return TokenUsageOut(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
    )


def turn_output_out(output: TurnOutput) -> TurnOutputOut:
    return TurnOutputOut(
        completion=output.completion,
        finish_reason=output.finish_reason.value,
        history=[
            ChatMessageOut(type=message.type.value, text=message.text)
            for message in output.history
        ],
        token_usage=_usage_out(output.token_usage),
        tool_executions=[
            ToolExecutionOut(
                request_id=execution.request_id,
                request_name=execution.request_name,
                request_arguments=_safe_arguments(execution.request_arguments),
                result=execution.result,
            )
            for execution in output.tool_executions
        ],
        json_output=output.json_output,
        intermediate_responses=[
            IntermediateResponseOut(
                id=response.id,
                completion=response.completion,
                finish_reason=response.finish_reason.value,
                token_usage=_usage_out(response.token_usage),
                tool_requests=[
                    ToolRequestOut(id=request.id, name=request.name, arguments=request.arguments)
                    for request in response.tool_requests
                ],
                request_duration_ms=response.request_duration_ms,
            )
            for response in output.intermediate_responses
        ],
        request_duration_ms=output.request_duration_ms,
    )


def _safe_arguments(arguments: str) -> dict:
    try:
        return parse_json_object(arguments)
    except ValueError:
        return {"raw": arguments}
