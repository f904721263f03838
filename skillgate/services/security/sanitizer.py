from __future__ import annotations

import re
from typing import Any

import bleach


# bleach keeps the text inside stripped tags, so executable blocks go first.
_EXECUTABLE_BLOCK = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_EVENT_HANDLER = re.compile(r"\bon\w+\s*=\s*(\"[^\"]*\"|'[^']*')", re.IGNORECASE)


def sanitize_text(value: str) -> str:
    """Strip markup from a single string.

    Script and style bodies are removed outright, inline ``on*=`` handlers are
    dropped and remaining tags are stripped by bleach. Strings without markup
    are returned unchanged so plain text keeps its ampersands and any
    ``key="value"`` prose.
    """
    if "<" not in value:
        return value
    cleaned = _EXECUTABLE_BLOCK.sub("", value)
    cleaned = _EVENT_HANDLER.sub("", cleaned)
    return bleach.clean(cleaned, tags=[], attributes={}, strip=True)


def sanitize_value(value: Any) -> Any:
    # Walk nested payloads; only string leaves change.
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {key: sanitize_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    return value


def sanitize_pairs(pairs: list[tuple[str, str]]) -> list[tuple[str, str]]:
    # Query strings and form bodies arrive as ordered key/value pairs.
    return [(key, sanitize_text(item)) for key, item in pairs]
