from __future__ import annotations

from enum import Enum
from typing import Optional


class Phase(str, Enum):
    """Orchestration phase in which a failure occurred."""

    VALIDATE = "validate"
    LOAD_MEMORY = "load-memory"
    RETRIEVE = "retrieve"
    GENERATE = "generate"
    TOOL_DISPATCH = "tool-dispatch"
    PERSIST_MEMORY = "persist-memory"
    CLOSE = "close"


class TurnflowError(RuntimeError):
    """Base error carrying a stable code and the phase that produced it."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
        phase: Optional[Phase] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code
        self.phase = phase

    def __str__(self) -> str:
        if self.phase is None:
            return f"[{self.code}] {self.message}"
        return f"[{self.code}] {self.message} (phase: {self.phase.value})"


class ConversationValidationError(TurnflowError):
    """Raised when the conversation or run arguments are malformed."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(code, message, phase=Phase.VALIDATE)


class CapabilityNotSupportedError(TurnflowError):
    """Raised when a provider does not offer the requested model surface."""

    def __init__(self, provider: str, capability: str, detail: str | None = None) -> None:
        message = detail or f"{provider} does not support {capability} models."
        super().__init__("CAPABILITY_NOT_SUPPORTED", message)
        self.provider = provider
        self.capability = capability


class ProviderError(TurnflowError):
    """Raised when a model vendor call fails."""


class MemoryBackendError(TurnflowError):
    """Raised when the memory backend cannot be reached or returns bad data."""


class ToolExecutionError(TurnflowError):
    """Raised when a tool server cannot be reached or misbehaves."""


class ToolDispatchError(TurnflowError):
    """Raised when the model requests a tool that is not registered."""


class ToolTurnLimitError(TurnflowError):
    """Raised when the model keeps requesting tools past the round-trip limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            "TOOL_TURN_LIMIT_EXCEEDED",
            f"Model exceeded the limit of {limit} sequential tool round trips.",
            phase=Phase.TOOL_DISPATCH,
        )
        self.limit = limit


class RetrievalError(TurnflowError):
    """Raised when a content retriever fails."""
