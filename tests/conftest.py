"""Shared fixtures: settings, scripted language model, scripted permission prompt.

Nothing here touches the network; model adapters are exercised separately
through httpx.MockTransport.
"""

from typing import Any

import pytest

from karyo.agent.models import Message, ModelResponse, StreamEvent, TextPart, ToolCallPart
from karyo.agent.permissions import PermissionGate
from karyo.agent.tools import ToolContext
from karyo.config import Settings

# ---------------------------------------------------------------------------
# Scripted language model
# ---------------------------------------------------------------------------


class ScriptedModel:
    """Language model double that replays queued responses.

    stream() pops from `responses`, generate() from `summaries`. A queued
    exception is raised instead of answering; a queued string given to
    generate() becomes a text-only response.
    """

    def __init__(
        self,
        model_id: str = "claude-sonnet-4-20250514",
        responses: list[Any] | None = None,
        summaries: list[Any] | None = None,
    ) -> None:
        self.model_id = model_id
        self.responses = list(responses or [])
        self.summaries = list(summaries or [])
        self.stream_calls: list[list[Message]] = []
        self.generate_calls: list[dict[str, Any]] = []
        self.closed = False

    async def stream(self, system_prompt, messages, tools=None, max_output_tokens=None):
        self.stream_calls.append(list(messages))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        for part in item.parts:
            if isinstance(part, TextPart):
                yield StreamEvent(type="text_delta", text=part.text)
            elif isinstance(part, ToolCallPart):
                yield StreamEvent(type="tool_call", tool_call=part)
        yield StreamEvent(type="response", response=item)

    async def generate(self, system_prompt, messages, tools=None, max_output_tokens=None):
        self.generate_calls.append({
            "system_prompt": system_prompt,
            "messages": list(messages),
            "tools": tools,
            "max_output_tokens": max_output_tokens,
        })
        item = self.summaries.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, ModelResponse):
            return item
        return ModelResponse(parts=[TextPart(item)], stop_reason="end_turn")

    async def aclose(self) -> None:
        self.closed = True


class ScriptedPrompt:
    """Permission prompt double: returns queued answers, records requests."""

    def __init__(self, answers: tuple[str, ...] = ()) -> None:
        self.answers = list(answers)
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, action: str, details: str) -> str:
        self.calls.append((action, details))
        return self.answers.pop(0) if self.answers else ""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        OPENAI_API_KEY="test-openai-key",
        GOOGLE_API_KEY="test-google-key",
        workspace_dir=str(tmp_path),
        _env_file=None,
    )


@pytest.fixture
def make_model():
    def _make(*responses, summaries=(), model_id="claude-sonnet-4-20250514") -> ScriptedModel:
        return ScriptedModel(model_id, list(responses), list(summaries))

    return _make


@pytest.fixture
def make_prompt():
    def _make(*answers: str) -> ScriptedPrompt:
        return ScriptedPrompt(answers)

    return _make


@pytest.fixture
def prompt() -> ScriptedPrompt:
    """Prompt that denies everything (no queued answers)."""
    return ScriptedPrompt()


@pytest.fixture
def tool_ctx(tmp_path, prompt) -> ToolContext:
    return ToolContext(working_dir=tmp_path, permissions=PermissionGate(prompt))
