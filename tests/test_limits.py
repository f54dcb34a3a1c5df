"""Tests for karyo/agent/limits.py -- model table and provider fallback."""

import pytest

from karyo.agent.limits import (
    DEFAULT_LIMITS,
    PROVIDER_LIMITS,
    ContextLimits,
    get_model_limits,
    provider_for,
)


class TestProviderFor:
    @pytest.mark.parametrize(
        "model_id, provider",
        [
            ("claude-sonnet-4-20250514", "anthropic"),
            ("gpt-4o", "openai"),
            ("o1-preview", "openai"),
            ("o3-mini", "openai"),
            ("o4-mini", "openai"),
            ("gemini-2.0-flash", "google"),
            ("llama-3-70b", None),
        ],
    )
    def test_prefix_mapping(self, model_id, provider):
        assert provider_for(model_id) == provider


class TestGetModelLimits:
    def test_exact_entry(self):
        assert get_model_limits("gpt-4o") == ContextLimits(128_000, 16_384)

    def test_unknown_model_uses_provider_fallback(self):
        assert get_model_limits("claude-something-new") == PROVIDER_LIMITS["anthropic"]
        assert get_model_limits("gpt-5-preview") == PROVIDER_LIMITS["openai"]

    def test_unknown_provider_uses_default(self):
        assert get_model_limits("mystery-model") == DEFAULT_LIMITS

    def test_usable_is_context_minus_output(self):
        assert ContextLimits(200_000, 8_192).usable == 191_808
