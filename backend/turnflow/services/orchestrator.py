from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Optional

from turnflow.core.config import Settings, get_settings
from turnflow.core.errors import (
    ConversationValidationError,
    Phase,
    ToolDispatchError,
    ToolTurnLimitError,
    TurnflowError,
)
from turnflow.domain.types import (
    ChatMessage,
    ChatMessageType,
    ChatRequest,
    ChatResponse,
    GenerationConfig,
    IntermediateResponse,
    ModelMessage,
    RetrievedSegment,
    TokenUsage,
    ToolExecution,
    TurnOutput,
    parse_json_object,
)
from turnflow.memory.base import Drop, MemoryProvider, MemoryRecord
from turnflow.providers.base import ChatModel, ModelProvider
from turnflow.retrieval.base import ContentRetriever, merge_segments
from turnflow.services.prompt_builder import PromptBuilder
from turnflow.tools.base import ToolProvider, ToolRegistry

logger = logging.getLogger(__name__)


def validate_conversation(
    conversation: Sequence[ChatMessage],
) -> tuple[Optional[str], list[ChatMessage], str]:
    """Split a conversation into system prompt, prior messages and final prompt."""

    if not conversation:
        raise ConversationValidationError("CONVERSATION_EMPTY", "At least one message is required.")
    system_messages = [m for m in conversation if m.type == ChatMessageType.SYSTEM]
    if len(system_messages) > 1:
        raise ConversationValidationError(
            "CONVERSATION_INVALID", "Only one system message is allowed."
        )
    last = conversation[-1]
    if last.type != ChatMessageType.USER:
        raise ConversationValidationError(
            "CONVERSATION_INVALID", "The last message must be a user message."
        )
    system_prompt = system_messages[0].text if system_messages else None
    history = [m for m in conversation[:-1] if m.type != ChatMessageType.SYSTEM]
    return system_prompt, history, last.text


@contextmanager
def _in_phase(phase: Phase) -> Iterator[None]:
    try:
        yield
    except TurnflowError as exc:
        if exc.phase is None:
            exc.phase = phase
        raise
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        raise TurnflowError(
            f"{phase.name}_FAILED", message, phase=phase
        ) from exc


class ConversationOrchestrator:
    """Resolve one conversation turn into a grounded completion.

    A run validates the conversation, loads memory, retrieves supporting
    content, then alternates between the chat model and tool executors until
    the model answers without tool requests. Tool providers and the memory
    provider are closed on every exit path.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._prompt_builder = prompt_builder or PromptBuilder(
            retrieval_max_chars=self._settings.retrieval_max_chars
        )

    async def run(
        self,
        conversation: Sequence[ChatMessage],
        provider: ModelProvider,
        config: Optional[GenerationConfig] = None,
        tools: Optional[Sequence[ToolProvider]] = None,
        memory: Optional[MemoryProvider] = None,
        retrievers: Optional[Sequence[ContentRetriever]] = None,
        memory_id: Optional[str] = None,
        max_tool_round_trips: Optional[int] = None,
    ) -> TurnOutput:
        started = time.monotonic()
        config = config or GenerationConfig()
        tool_providers = list(tools or [])
        try:
            system_prompt, history, prompt = validate_conversation(conversation)
            limit = self._resolve_limit(max_tool_round_trips)
            resolved_id = self._resolve_memory_id(memory, memory_id)

            with _in_phase(Phase.LOAD_MEMORY):
                record = await self._load_memory(memory, resolved_id, history)

            with _in_phase(Phase.RETRIEVE):
                segments = await self._retrieve(list(retrievers or []), prompt)

            with _in_phase(Phase.TOOL_DISPATCH):
                registry = await ToolRegistry.from_providers(tool_providers)

            with _in_phase(Phase.GENERATE):
                chat_model = provider.chat_model(config)
                messages = self._prompt_builder.build_messages(
                    system_prompt, record.messages, prompt, segments
                )
            response, usage, executions, intermediate = await self._generate(
                chat_model, messages, registry, limit
            )

            json_output = None
            if config.response_format is not None and config.response_format.is_json:
                with _in_phase(Phase.GENERATE):
                    json_output = _parse_json_output(response.text)

            with _in_phase(Phase.PERSIST_MEMORY):
                await self._persist_memory(memory, resolved_id, record, prompt, response.text)

            output = TurnOutput(
                completion=response.text,
                finish_reason=response.finish_reason,
                history=[*conversation, ChatMessage.ai(response.text)],
                token_usage=usage,
                tool_executions=executions,
                json_output=json_output,
                intermediate_responses=intermediate,
                request_duration_ms=_elapsed_ms(started),
            )
        finally:
            await self._close_resources(tool_providers, memory)

        logger.debug("AI completion: %s", output.completion)
        if usage is not None:
            logger.info(
                "Token usage: input=%s output=%s total=%s",
                usage.input_tokens,
                usage.output_tokens,
                usage.total_tokens,
            )
        return output

    def _resolve_limit(self, max_tool_round_trips: Optional[int]) -> int:
        limit = (
            self._settings.max_tool_round_trips
            if max_tool_round_trips is None
            else max_tool_round_trips
        )
        if limit < 0:
            raise ConversationValidationError(
                "TOOL_LIMIT_INVALID", "max_tool_round_trips must be >= 0."
            )
        return limit

    @staticmethod
    def _resolve_memory_id(
        memory: Optional[MemoryProvider], memory_id: Optional[str]
    ) -> Optional[str]:
        if memory is None:
            return None
        resolved = (memory_id or memory.memory_id or "").strip()
        if not resolved:
            raise ConversationValidationError(
                "MEMORY_ID_REQUIRED", "A memory id is required when memory is configured."
            )
        return resolved

    async def _load_memory(
        self,
        memory: Optional[MemoryProvider],
        memory_id: Optional[str],
        history: list[ChatMessage],
    ) -> MemoryRecord:
        if memory is None or memory_id is None:
            record = MemoryRecord(max_messages=max(2, len(history) + 2))
            record.extend(history)
            return record

        if memory.drop_policy == Drop.BEFORE_EXECUTION:
            await memory.drop(memory_id)
            record = memory.new_record()
        else:
            loaded = await memory.load(memory_id)
            if loaded is None:
                record = memory.new_record()
            elif loaded.is_expired():
                record = memory.new_record()
                record.digest = loaded.digest
            else:
                record = loaded
        record.extend(history)
        logger.debug("Loaded %d messages for memory %s", len(record.messages), memory_id)
        return record

    @staticmethod
    async def _retrieve(
        retrievers: list[ContentRetriever], prompt: str
    ) -> list[RetrievedSegment]:
        if not retrievers:
            return []
        groups = []
        for retriever in retrievers:
            groups.append(await retriever.retrieve(prompt))
        segments = merge_segments(groups)
        logger.debug("Retrieved %d segments from %d retrievers", len(segments), len(retrievers))
        return segments

    async def _generate(
        self,
        chat_model: ChatModel,
        messages: list[ModelMessage],
        registry: ToolRegistry,
        limit: int,
    ) -> tuple[ChatResponse, Optional[TokenUsage], list[ToolExecution], list[IntermediateResponse]]:
        transcript = list(messages)
        usage: Optional[TokenUsage] = None
        executions: list[ToolExecution] = []
        intermediate: list[IntermediateResponse] = []
        round_trips = 0
        while True:
            call_started = time.monotonic()
            with _in_phase(Phase.GENERATE):
                response = await chat_model.chat(
                    ChatRequest(messages=tuple(transcript), tools=registry.specifications())
                )
            intermediate.append(
                IntermediateResponse(
                    id=response.id,
                    completion=response.text,
                    finish_reason=response.finish_reason,
                    token_usage=response.token_usage,
                    tool_requests=response.tool_requests,
                    request_duration_ms=_elapsed_ms(call_started),
                )
            )
            if usage is None:
                usage = response.token_usage
            else:
                usage = usage.add(response.token_usage)
            if not response.wants_tools:
                return response, usage, executions, intermediate

            if round_trips >= limit:
                raise ToolTurnLimitError(limit)
            round_trips += 1
            transcript.append(
                ModelMessage(
                    role="assistant", content=response.text, tool_calls=response.tool_requests
                )
            )
            for request in response.tool_requests:
                with _in_phase(Phase.TOOL_DISPATCH):
                    spec = registry.get(request.name)
                    if spec.executor is None:
                        raise ToolDispatchError(
                            "TOOL_NOT_EXECUTABLE", f"Tool {request.name} has no executor."
                        )
                    logger.debug("Executing tool %s", request.name)
                    result = await spec.executor.execute(request.arguments)
                executions.append(
                    ToolExecution(
                        request_id=request.id,
                        request_name=request.name,
                        request_arguments=request.arguments,
                        result=result,
                    )
                )
                transcript.append(
                    ModelMessage(
                        role="tool", content=result, tool_call_id=request.id, name=request.name
                    )
                )

    @staticmethod
    async def _persist_memory(
        memory: Optional[MemoryProvider],
        memory_id: Optional[str],
        record: MemoryRecord,
        prompt: str,
        completion: str,
    ) -> None:
        if memory is None or memory_id is None:
            return
        if memory.drop_policy == Drop.AFTER_EXECUTION:
            await memory.drop(memory_id)
            return
        record.add(ChatMessage.user(prompt))
        record.add(ChatMessage.ai(completion))
        await memory.persist(memory_id, record, memory.ttl)

    @staticmethod
    async def _close_resources(
        tool_providers: list[ToolProvider], memory: Optional[MemoryProvider]
    ) -> None:
        for tool_provider in tool_providers:
            try:
                await tool_provider.close()
            except Exception:  # noqa: BLE001
                logger.warning("Failed to close tool provider %s", tool_provider.name, exc_info=True)
        if memory is not None:
            try:
                await memory.close()
            except Exception:  # noqa: BLE001
                logger.warning("Failed to close memory provider %s", memory.name, exc_info=True)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _parse_json_output(text: str) -> dict:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        return parse_json_object(cleaned)
    except ValueError as exc:
        raise TurnflowError(
            "JSON_OUTPUT_INVALID", "Model output is not a JSON object.", phase=Phase.GENERATE
        ) from exc
