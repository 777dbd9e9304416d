from __future__ import annotations

from turnflow.providers.openai_adapter import OpenAICompatibleProvider


class DeepSeekProvider(OpenAICompatibleProvider):
    """Adapter for the DeepSeek OpenAI-compatible API.

    DeepSeek exposes chat only: embedding and image handles raise
    ``CapabilityNotSupportedError``. JSON output is requested as a plain JSON
    object because the API has no schema-constrained mode.
    """

    name = "deepseek"
    chat_path = "/chat/completions"
    api_prefix = ""
    supports_json_schema = False
