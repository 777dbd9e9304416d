from __future__ import annotations

import re

SECRET_PATTERNS = (
    (re.compile(r"(sk-[A-Za-z0-9_\-]{6,})"), "sk-***"),
    (re.compile(r"(tvly-[A-Za-z0-9_\-]{6,})"), "tvly-***"),
    (re.compile(r"(AIza[0-9A-Za-z_\-]{16,})"), "AIza***"),
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._\-]{8,}"), r"\1***"),
)


def redact_secrets(text: str) -> str:
    """Redact API keys or similar secrets from a string."""

    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def truncate_text(text: str, max_length: int) -> str:
    """Clamp a log-bound string to a readable length."""

    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."
