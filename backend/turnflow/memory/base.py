from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from turnflow.core.errors import MemoryBackendError
from turnflow.domain.types import ChatMessage, ChatMessageType
from turnflow.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 10
DEFAULT_TTL = timedelta(hours=1)


class Drop(str, Enum):
    """When a stored conversation window is discarded."""

    NEVER = "NEVER"
    BEFORE_EXECUTION = "BEFORE_EXECUTION"
    AFTER_EXECUTION = "AFTER_EXECUTION"


@dataclass
class MemoryRecord:
    """Bounded sliding window of USER and AI messages for one memory id.

    Adding past ``max_messages`` evicts the oldest messages first. ``digest``
    is the hash of the payload the record was loaded from, or ``None`` for a
    fresh record.
    """

    max_messages: int = DEFAULT_MAX_MESSAGES
    messages: list[ChatMessage] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    digest: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        self._evict()

    def add(self, message: ChatMessage) -> None:
        self.messages.append(message)
        self._evict()

    def extend(self, messages: Iterable[ChatMessage]) -> None:
        for message in messages:
            self.add(message)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def to_json(self) -> str:
        return messages_to_json(self.messages)

    def _evict(self) -> None:
        overflow = len(self.messages) - self.max_messages
        if overflow > 0:
            del self.messages[:overflow]


def messages_to_json(messages: Sequence[ChatMessage]) -> str:
    """Serialize messages as a JSON array of ``{type, text}`` objects."""

    return json.dumps(
        [{"type": message.type.value, "text": message.text} for message in messages],
        ensure_ascii=False,
    )


def messages_from_json(payload: str) -> list[ChatMessage]:
    """Parse a stored message array; malformed payloads raise ``MemoryBackendError``."""

    try:
        items = json.loads(payload)
    except ValueError as exc:
        raise MemoryBackendError("MEMORY_PAYLOAD_INVALID", "Stored memory is not valid JSON.") from exc
    if not isinstance(items, list):
        raise MemoryBackendError("MEMORY_PAYLOAD_INVALID", "Stored memory must be a JSON array.")
    messages: list[ChatMessage] = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("text"), str):
            raise MemoryBackendError(
                "MEMORY_PAYLOAD_INVALID", "Stored memory entries need a type and a text."
            )
        try:
            message_type = ChatMessageType.parse(item.get("type", ""))
        except ValueError as exc:
            raise MemoryBackendError("MEMORY_PAYLOAD_INVALID", str(exc)) from exc
        messages.append(ChatMessage(message_type, item["text"]))
    return messages


def payload_digest(payload: Optional[str]) -> Optional[str]:
    if payload is None:
        return None
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class MemoryProvider(ABC):
    """Persistence backend for conversation windows keyed by memory id."""

    name: str = "memory"

    def __init__(
        self,
        memory_id: Optional[str] = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        ttl: timedelta = DEFAULT_TTL,
        drop_policy: Drop = Drop.NEVER,
    ) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        if ttl.total_seconds() <= 0:
            raise ValueError("ttl must be positive")
        self.memory_id = memory_id
        self.max_messages = max_messages
        self.ttl = ttl
        self.drop_policy = Drop(drop_policy)

    def new_record(self) -> MemoryRecord:
        return MemoryRecord(max_messages=self.max_messages)

    @abstractmethod
    async def load(self, memory_id: str) -> Optional[MemoryRecord]:
        """Return the stored window, or ``None`` when absent or expired."""

    @abstractmethod
    async def persist(
        self, memory_id: str, record: MemoryRecord, ttl: Optional[timedelta] = None
    ) -> None:
        """Store the window, replacing any previous value."""

    @abstractmethod
    async def drop(self, memory_id: str) -> None:
        """Delete the stored window if present."""

    async def close(self) -> None:
        return None

    def _record_from_payload(
        self, payload: str, expires_at: Optional[datetime] = None
    ) -> MemoryRecord:
        return MemoryRecord(
            max_messages=self.max_messages,
            messages=messages_from_json(payload),
            expires_at=expires_at,
            digest=payload_digest(payload),
        )

    def _warn_if_changed(self, memory_id: str, record: MemoryRecord, current: Optional[str]) -> None:
        if payload_digest(current) != record.digest:
            logger.warning(
                "Memory %s changed since it was loaded; overwriting with this turn's window",
                memory_id,
            )
