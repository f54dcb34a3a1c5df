"""Shared data models for the agent layer.

Messages and their parts are immutable values. The conversation itself is
a plain list owned by the Agent and replaced wholesale after pruning or
compaction, so nothing downstream ever mutates a message in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolCallPart:
    """A model-issued request to run a named tool."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool-call"] = "tool-call"


@dataclass(frozen=True)
class ToolResultPart:
    """Output of a tool call, answered in the next user-role message."""

    call_id: str
    result: Any
    is_error: bool = False
    type: Literal["tool-result"] = "tool-result"


Part = Union[TextPart, ToolCallPart, ToolResultPart]


@dataclass(frozen=True)
class Message:
    """A single message in a conversation.

    content is either plain text or an ordered tuple of parts.
    """

    role: Role
    content: str | tuple[Part, ...]

    @property
    def parts(self) -> tuple[Part, ...]:
        if isinstance(self.content, str):
            return (TextPart(self.content),) if self.content else ()
        return self.content

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    @property
    def starts_turn(self) -> bool:
        """A user message carrying no tool results opens a new turn."""
        return self.role == "user" and not self.tool_results


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: Usage | None) -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass
class ModelResponse:
    """Terminal result of one model call."""

    parts: list[Part]
    stop_reason: str = ""  # end_turn, tool_use, max_tokens, stop ...
    usage: Usage | None = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]


@dataclass
class StreamEvent:
    """A single event from a streaming model call."""

    type: str  # text_delta, tool_call, response
    text: str = ""
    tool_call: ToolCallPart | None = None
    response: ModelResponse | None = None


class ContextAction(StrEnum):
    NONE = "none"
    PRUNED = "pruned"
    COMPACTED = "compacted"


@dataclass
class TurnEvent:
    """An event surfaced to the caller of Agent.run_turn()."""

    type: str  # context, text_delta, tool_start, tool_end, error, warning, done
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False
    action: ContextAction = ContextAction.NONE
    usage: Usage | None = None
