"""Approximate token accounting.

Fixed chars-per-token heuristic, not a tokenizer. Every function here is
pure so the context thresholds built on top of it are deterministic.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from typing import Any

from karyo.agent.models import Message, TextPart, ToolCallPart, ToolResultPart

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD = 4  # role + structure


def canonical_json(value: Any) -> str:
    """Stable string form for tool arguments and non-text payloads."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def payload_text(value: Any) -> str:
    """Strings pass through; everything else is serialized canonically."""
    return value if isinstance(value, str) else canonical_json(value)


def estimate_tokens(text: str | None) -> int:
    """Estimate tokens from text length (4 chars per token, rounded up)."""
    return math.ceil(max(0, len(text or "")) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    tokens = MESSAGE_OVERHEAD
    if isinstance(message.content, str):
        return tokens + estimate_tokens(message.content)

    for part in message.content:
        match part:
            case TextPart(text=text):
                tokens += estimate_tokens(text)
            case ToolCallPart(name=name, arguments=arguments):
                tokens += estimate_tokens(name)
                tokens += estimate_tokens(payload_text(arguments))
            case ToolResultPart(result=result):
                tokens += estimate_tokens(payload_text(result))
            case _:
                raise TypeError(f"Unknown message part: {part!r}")
    return tokens


def estimate_conversation_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def format_tokens(tokens: int) -> str:
    """Compact display form: 950, 12.5k, 1.2M."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}k"
    return str(tokens)
