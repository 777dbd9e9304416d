from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from typing import Optional

from turnflow.core.errors import ConversationValidationError
from turnflow.domain.schema import ResponseFormat, ResponseSchema
from turnflow.domain.types import ChatMessage, GenerationConfig, TurnOutput
from turnflow.providers.base import ModelProvider
from turnflow.services.orchestrator import ConversationOrchestrator

logger = logging.getLogger(__name__)

CLASSIFY_SYSTEM_PROMPT = (
    "Respond by only one of the following classes by typing just the exact class name: {classes}"
)
EXTRACT_SYSTEM_PROMPT = (
    "Extract the following fields from the user's text and answer with a JSON object "
    "containing exactly these keys: {fields}. Use null for values that are not present."
)


class StructuredTaskService:
    """Single-shot classification and extraction on top of the orchestrator."""

    def __init__(self, orchestrator: Optional[ConversationOrchestrator] = None) -> None:
        self._orchestrator = orchestrator or ConversationOrchestrator()

    async def classify(
        self,
        prompt: str,
        classes: Sequence[str],
        provider: ModelProvider,
        config: Optional[GenerationConfig] = None,
        system_prompt: Optional[str] = None,
    ) -> TurnOutput:
        """Return a turn whose completion is one of ``classes`` when the model complies."""

        labels = [label.strip() for label in classes if label and label.strip()]
        if not labels:
            raise ConversationValidationError("CLASSES_REQUIRED", "At least one class is required.")
        system = system_prompt or CLASSIFY_SYSTEM_PROMPT.format(classes=labels)
        output = await self._orchestrator.run(
            [ChatMessage.system(system), ChatMessage.user(prompt)], provider, config
        )
        label = _match_label(output.completion, labels)
        if label is None:
            logger.warning("Classification answer matched no class: %s", output.completion)
            return output
        return dataclasses.replace(
            output,
            completion=label,
            history=[*output.history[:-1], ChatMessage.ai(label)],
        )

    async def extract(
        self,
        text: str,
        schema: ResponseSchema,
        provider: ModelProvider,
        config: Optional[GenerationConfig] = None,
    ) -> TurnOutput:
        """Return a turn whose ``json_output`` holds exactly the schema's fields."""

        base = config or GenerationConfig()
        config = dataclasses.replace(base, response_format=ResponseFormat.json(schema))
        system = EXTRACT_SYSTEM_PROMPT.format(fields=", ".join(schema.field_names))
        output = await self._orchestrator.run(
            [ChatMessage.system(system), ChatMessage.user(text)], provider, config
        )
        values = output.json_output or {}
        output.json_output = {name: values.get(name) for name in schema.field_names}
        return output


def _match_label(answer: str, labels: Sequence[str]) -> Optional[str]:
    cleaned = answer.strip().strip(".\"'`").strip()
    for label in labels:
        if cleaned.casefold() == label.casefold():
            return label
    # Fall back to the single class mentioned in a longer answer.
    mentioned = [label for label in labels if label.casefold() in answer.casefold()]
    if len(mentioned) == 1:
        return mentioned[0]
    return None
