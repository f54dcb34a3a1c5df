"""Context window limits per model, with provider fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextLimits:
    context: int  # total context window
    output: int  # reserved for the model's reply

    @property
    def usable(self) -> int:
        return self.context - self.output


MODEL_LIMITS: dict[str, ContextLimits] = {
    # Anthropic
    "claude-opus-4-20250514": ContextLimits(200_000, 32_000),
    "claude-sonnet-4-20250514": ContextLimits(200_000, 64_000),
    "claude-3-7-sonnet-20250219": ContextLimits(200_000, 64_000),
    "claude-3-5-sonnet-20241022": ContextLimits(200_000, 8_192),
    "claude-3-5-haiku-20241022": ContextLimits(200_000, 8_192),
    # OpenAI
    "gpt-4.1": ContextLimits(1_047_576, 32_768),
    "gpt-4.1-mini": ContextLimits(1_047_576, 32_768),
    "gpt-4o": ContextLimits(128_000, 16_384),
    "gpt-4o-mini": ContextLimits(128_000, 16_384),
    "o1": ContextLimits(200_000, 100_000),
    "o3-mini": ContextLimits(200_000, 100_000),
    # Google
    "gemini-2.0-flash": ContextLimits(1_048_576, 8_192),
    "gemini-1.5-pro": ContextLimits(2_097_152, 8_192),
}

PROVIDER_LIMITS: dict[str, ContextLimits] = {
    "anthropic": ContextLimits(200_000, 8_192),
    "openai": ContextLimits(128_000, 16_384),
    "google": ContextLimits(1_000_000, 8_192),
}

DEFAULT_LIMITS = ContextLimits(128_000, 4_096)

_PROVIDER_PREFIXES: tuple[tuple[str, str], ...] = (
    ("claude", "anthropic"),
    ("gpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("gemini", "google"),
)


def provider_for(model_id: str) -> str | None:
    """Map a model identifier to its provider, or None if unrecognized."""
    lowered = model_id.lower()
    for prefix, provider in _PROVIDER_PREFIXES:
        if lowered.startswith(prefix):
            return provider
    return None


def get_model_limits(model_id: str) -> ContextLimits:
    """Resolve limits for a model: exact table entry, else provider default."""
    limits = MODEL_LIMITS.get(model_id)
    if limits is not None:
        return limits

    provider = provider_for(model_id)
    fallback = PROVIDER_LIMITS.get(provider, DEFAULT_LIMITS) if provider else DEFAULT_LIMITS
    logger.debug(
        "No limits for model %s, using %s fallback (%d/%d)",
        model_id, provider or "default", fallback.context, fallback.output,
    )
    return fallback
