from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol

if TYPE_CHECKING:
    from turnflow.domain.schema import ResponseFormat


class ChatMessageType(str, Enum):
    """Closed set of conversation roles."""

    SYSTEM = "SYSTEM"
    USER = "USER"
    AI = "AI"

    @classmethod
    def parse(cls, value: "str | ChatMessageType") -> "ChatMessageType":
        """Normalize a role name from external input."""

        if isinstance(value, ChatMessageType):
            return value
        normalized = str(value).strip().upper()
        aliases = {"ASSISTANT": cls.AI, "MODEL": cls.AI, "HUMAN": cls.USER}
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unknown chat message type: {value}") from exc


@dataclass(frozen=True)
class ChatMessage:
    """One conversation message."""

    type: ChatMessageType
    text: str

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls(ChatMessageType.SYSTEM, text)

    @classmethod
    def user(cls, text: str) -> "ChatMessage":
        return cls(ChatMessageType.USER, text)

    @classmethod
    def ai(cls, text: str) -> "ChatMessage":
        return cls(ChatMessageType.AI, text)


class FinishReason(str, Enum):
    """Why the vendor stopped generating."""

    STOP = "STOP"
    LENGTH = "LENGTH"
    TOOL_EXECUTION = "TOOL_EXECUTION"
    CONTENT_FILTER = "CONTENT_FILTER"
    OTHER = "OTHER"


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by a vendor; any count may be missing."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    @classmethod
    def of(cls, input_tokens: int | None, output_tokens: int | None) -> "TokenUsage":
        total = None
        if input_tokens is not None or output_tokens is not None:
            total = (input_tokens or 0) + (output_tokens or 0)
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)

    def add(self, other: Optional["TokenUsage"]) -> "TokenUsage":
        """Sum two usages, keeping ``None`` only where both sides are missing."""

        if other is None:
            return self
        return TokenUsage(
            input_tokens=_sum_optional(self.input_tokens, other.input_tokens),
            output_tokens=_sum_optional(self.output_tokens, other.output_tokens),
            total_tokens=_sum_optional(self.total_tokens, other.total_tokens),
        )


def _sum_optional(left: int | None, right: int | None) -> int | None:
    if left is None and right is None:
        return None
    return (left or 0) + (right or 0)


@dataclass(frozen=True)
class GenerationConfig:
    """Immutable generation parameters handed to a chat model."""

    temperature: float | None = None
    top_k: int | None = None
    top_p: float | None = None
    seed: int | None = None
    max_tokens: int | None = None
    log_requests: bool = False
    log_responses: bool = False
    response_format: Optional["ResponseFormat"] = None


class ToolExecutor(Protocol):
    """Callable side of a tool: text arguments in, text result out."""

    async def execute(self, arguments: str) -> str:
        """Run the tool with JSON-encoded arguments."""


@dataclass(frozen=True)
class ToolSpecification:
    """A tool the model may call, with its argument schema and executor."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    executor: Optional[ToolExecutor] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ToolExecutionRequest:
    """A model's request to run a tool."""

    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ToolExecution:
    """A tool request paired with the result fed back to the model."""

    request_id: str
    request_name: str
    request_arguments: str
    result: str

    def arguments_as_dict(self) -> dict[str, Any]:
        return parse_json_object(self.request_arguments)


@dataclass(frozen=True)
class RetrievedSegment:
    """A ranked snippet of supporting text."""

    text: str
    score: float
    source: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ModelMessage:
    """Vendor-neutral message sent to a chat model inside one turn.

    Besides the conversation roles this carries the assistant tool-call
    messages and tool results exchanged during the turn.
    """

    role: str
    content: str = ""
    tool_calls: tuple[ToolExecutionRequest, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ChatRequest:
    """Input to one chat model call."""

    messages: tuple[ModelMessage, ...]
    tools: tuple[ToolSpecification, ...] = ()


@dataclass(frozen=True)
class ChatResponse:
    """Output of one chat model call."""

    text: str
    finish_reason: FinishReason
    token_usage: TokenUsage | None = None
    tool_requests: tuple[ToolExecutionRequest, ...] = ()
    id: str | None = None

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_requests)


@dataclass(frozen=True)
class IntermediateResponse:
    """One model response produced while resolving a turn."""

    id: str | None
    completion: str
    finish_reason: FinishReason
    token_usage: TokenUsage | None
    tool_requests: tuple[ToolExecutionRequest, ...]
    request_duration_ms: int


@dataclass(frozen=True)
class GeneratedImage:
    """Result of an image generation call."""

    url: str | None = None
    b64_json: str | None = None
    revised_prompt: str | None = None


@dataclass
class TurnOutput:
    """Structured result of one orchestrated turn."""

    completion: str
    finish_reason: FinishReason
    history: list[ChatMessage]
    token_usage: TokenUsage | None = None
    tool_executions: list[ToolExecution] = field(default_factory=list)
    json_output: dict[str, Any] | None = None
    intermediate_responses: list[IntermediateResponse] = field(default_factory=list)
    request_duration_ms: int | None = None


def parse_json_object(text: str | None) -> dict[str, Any]:
    """Parse JSON object text; blank text yields an empty dict."""

    if text is None or not text.strip():
        return {}
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError("Expected a JSON object.")
    return value
