from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Optional

from turnflow.domain.types import ChatMessage, ChatMessageType, ModelMessage, RetrievedSegment

_ROLES = {
    ChatMessageType.SYSTEM: "system",
    ChatMessageType.USER: "user",
    ChatMessageType.AI: "assistant",
}


class PromptBuilder:
    """Build the model-facing message list for one turn."""

    def __init__(self, retrieval_max_chars: int = 8000) -> None:
        self._retrieval_max_chars = max(200, retrieval_max_chars)

    def build_messages(
        self,
        system_prompt: Optional[str],
        history: Sequence[ChatMessage],
        prompt: str,
        segments: Iterable[RetrievedSegment] | None = None,
    ) -> list[ModelMessage]:
        """Return system, history and the final user message.

        Retrieved segments are appended to the final user message only.
        """

        messages: list[ModelMessage] = []
        if system_prompt:
            messages.append(ModelMessage(role="system", content=system_prompt))
        for message in history:
            if message.type == ChatMessageType.SYSTEM:
                continue
            messages.append(ModelMessage(role=_ROLES[message.type], content=message.text))
        messages.append(ModelMessage(role="user", content=self.augment_prompt(prompt, segments)))
        return messages

    def augment_prompt(
        self, prompt: str, segments: Iterable[RetrievedSegment] | None
    ) -> str:
        section = self._build_retrieval_section(segments)
        if not section:
            return prompt
        return f"{prompt}\n\nAnswer using the following information:\n{section}"

    def _build_retrieval_section(self, segments: Iterable[RetrievedSegment] | None) -> str:
        if not segments:
            return ""

        blocks: list[str] = []
        seen: set[str] = set()
        total_chars = 0
        for segment in segments:
            text = segment.text.strip()
            if not text:
                continue
            dedupe_key = " ".join(text.split()).casefold()
            if dedupe_key in seen:
                continue
            projected_chars = total_chars + len(text)
            if projected_chars > self._retrieval_max_chars:
                break
            blocks.append(text)
            seen.add(dedupe_key)
            total_chars = projected_chars
        return "\n\n".join(blocks)
