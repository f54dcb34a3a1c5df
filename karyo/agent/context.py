"""Conversation context management: tool output pruning and compaction.

Two layers, cheapest first:
  Layer 1: Tool output pruning (no LLM). Old tool results are replaced by
           a placeholder; message structure and call ids survive.
  Layer 2: Compaction (LLM-powered). The whole history collapses into a
           three-message summary skeleton.

Thresholds are fractions of the usable context (window minus the output
reserve) for the model the manager is bound to.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from pydantic import BaseModel

from karyo.agent.limits import ContextLimits, get_model_limits
from karyo.agent.models import (
    ContextAction,
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from karyo.tokens import (
    canonical_json,
    estimate_conversation_tokens,
    estimate_tokens,
    format_tokens,
    payload_text,
)

if TYPE_CHECKING:
    from karyo.agent.llm import LanguageModel

logger = logging.getLogger(__name__)

PRUNE_PROTECT = 40_000  # Most recent eligible tool output kept verbatim
PRUNE_MINIMUM = 20_000  # Only prune if at least this much can be freed
CONTEXT_THRESHOLD = 0.70  # Start pruning
COMPACT_THRESHOLD = 0.85  # Summarize
PROTECTED_TURNS = 2

PRUNED_PLACEHOLDER = "[Tool output cleared - context management]"

SUMMARY_MAX_TOKENS = 2000
_TRANSCRIPT_RESULT_CHARS = 2000

SUMMARY_SYSTEM_PROMPT = """\
You are summarizing a coding assistant conversation. Provide a concise summary that captures:
1. What tasks were accomplished
2. What files were modified or created
3. Current state of the work
4. Any pending tasks or next steps

Be specific about file names and changes made. Keep the summary under 1000 words."""

SUMMARY_QUESTION = "What have we accomplished so far in this session?"
SUMMARY_ACK = "Thanks for the summary. Let's continue."


class ContextStats(BaseModel):
    """Context usage snapshot for one conversation."""

    message_count: int
    estimated_tokens: int
    context_limit: int
    output_reserve: int
    usable_context: int
    usage_percent: int
    tool_outputs: int
    pruned_outputs: int


@dataclass
class PruneResult:
    messages: list[Message]
    pruned_count: int = 0
    tokens_saved: int = 0


def _is_pruned(part: ToolResultPart) -> bool:
    return payload_text(part.result) == PRUNED_PLACEHOLDER


class ContextManager:
    """Keeps a conversation inside one model's context budget.

    Never mutates the conversation it is given: every operation returns
    either the same list (nothing to do) or a new one.
    """

    def __init__(self, model_id: str, limits: ContextLimits | None = None) -> None:
        self.model_id = model_id
        self.limits = limits or get_model_limits(model_id)

    def usable_context(self) -> int:
        return self.limits.usable

    def estimate_tokens(self, messages: list[Message]) -> int:
        return estimate_conversation_tokens(messages)

    def should_prune(self, messages: list[Message]) -> bool:
        return self.estimate_tokens(messages) > self.usable_context() * CONTEXT_THRESHOLD

    def should_compact(self, messages: list[Message]) -> bool:
        return self.estimate_tokens(messages) > self.usable_context() * COMPACT_THRESHOLD

    # ------------------------------------------------------------------
    # Layer 1: Tool Output Pruning
    # ------------------------------------------------------------------

    def prune_tool_outputs(self, messages: list[Message]) -> PruneResult:
        """Replace old tool results with a placeholder.

        Walks backwards. The two most recent turns are never touched. Among
        older tool results, the newest PRUNE_PROTECT tokens are kept and
        everything beyond becomes a candidate; candidates are only cleared
        if together they free at least PRUNE_MINIMUM tokens.
        """
        turns = 0
        accumulated = 0
        candidates: dict[int, dict[int, int]] = {}  # msg index -> {part index: tokens}

        for i in range(len(messages) - 1, -1, -1):
            msg = messages[i]
            if msg.starts_turn:
                turns += 1
            if turns < PROTECTED_TURNS:
                continue
            if isinstance(msg.content, str):
                continue

            for j in range(len(msg.content) - 1, -1, -1):
                part = msg.content[j]
                if not isinstance(part, ToolResultPart) or _is_pruned(part):
                    continue
                part_tokens = estimate_tokens(payload_text(part.result))
                accumulated += part_tokens
                if accumulated > PRUNE_PROTECT:
                    candidates.setdefault(i, {})[j] = part_tokens

        potential = sum(t for parts in candidates.values() for t in parts.values())
        logger.debug(
            "Prune scan: %d eligible tool tokens, %d prunable", accumulated, potential,
        )
        if potential < PRUNE_MINIMUM:
            return PruneResult(messages=messages)

        result: list[Message] = []
        pruned_count = 0
        tokens_saved = 0
        for i, msg in enumerate(messages):
            targets = candidates.get(i)
            if not targets:
                result.append(msg)
                continue
            content = list(msg.content)
            for j, part_tokens in targets.items():
                content[j] = replace(content[j], result=PRUNED_PLACEHOLDER)
                pruned_count += 1
                tokens_saved += part_tokens
            result.append(replace(msg, content=tuple(content)))

        logger.info(
            "Pruned %d old tool outputs (saved ~%s tokens)",
            pruned_count, format_tokens(tokens_saved),
        )
        return PruneResult(messages=result, pruned_count=pruned_count, tokens_saved=tokens_saved)

    # ------------------------------------------------------------------
    # Layer 2: Compaction
    # ------------------------------------------------------------------

    async def summarize(self, messages: list[Message], model: LanguageModel) -> list[Message]:
        """Collapse the conversation into a summary skeleton.

        On any model failure the input conversation is returned unchanged;
        the failure is only reported through the log.
        """
        logger.info("Compacting conversation: %d messages", len(messages))
        try:
            response = await model.generate(
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                messages=[Message(role="user", content=self._serialize_for_summary(messages))],
                tools=None,
                max_output_tokens=SUMMARY_MAX_TOKENS,
            )
        except Exception as e:
            logger.error("Failed to generate summary, keeping original messages: %s", e)
            return messages

        summary = response.text.strip()
        if not summary:
            logger.error("Summary was empty, keeping original messages")
            return messages

        logger.info("Conversation compacted to summary (%d chars)", len(summary))
        return [
            Message(role="user", content=SUMMARY_QUESTION),
            Message(role="assistant", content=summary),
            Message(role="user", content=SUMMARY_ACK),
        ]

    @staticmethod
    def _serialize_for_summary(messages: list[Message]) -> str:
        """Render messages as a readable transcript for summarization.

        Long tool results are clipped; the summary only needs their gist.
        """
        lines = []
        for msg in messages:
            role = "User" if msg.role == "user" else "Assistant"
            chunks: list[str] = []
            for part in msg.parts:
                match part:
                    case TextPart(text=text):
                        chunks.append(text)
                    case ToolCallPart(name=name, arguments=arguments):
                        chunks.append(f"[Tool call: {name} {canonical_json(arguments)}]")
                    case ToolResultPart(result=result, is_error=is_error):
                        text = payload_text(result)
                        if len(text) > _TRANSCRIPT_RESULT_CHARS:
                            omitted = len(text) - _TRANSCRIPT_RESULT_CHARS
                            text = f"{text[:_TRANSCRIPT_RESULT_CHARS]}\n... [{omitted} chars omitted]"
                        label = "Tool error" if is_error else "Tool result"
                        chunks.append(f"[{label}]\n{text}")
            if chunks:
                lines.append(f"**{role}:** " + "\n".join(chunks))
        return "\n\n".join(lines)

    # ------------------------------------------------------------------
    # Combined policy
    # ------------------------------------------------------------------

    async def process_messages(
        self, messages: list[Message], model: LanguageModel,
    ) -> tuple[list[Message], ContextAction]:
        """Condition the conversation before a model call.

        Pruning is preferred; compaction is the last resort because it
        discards the exact tool history.
        """
        if self.should_prune(messages):
            pruned = self.prune_tool_outputs(messages)
            if pruned.pruned_count > 0:
                if self.should_compact(pruned.messages):
                    compacted = await self.summarize(pruned.messages, model)
                    if compacted is not pruned.messages:
                        return compacted, ContextAction.COMPACTED
                return pruned.messages, ContextAction.PRUNED

        if self.should_compact(messages):
            compacted = await self.summarize(messages, model)
            if compacted is not messages:
                return compacted, ContextAction.COMPACTED

        return messages, ContextAction.NONE

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self, messages: list[Message]) -> ContextStats:
        estimated = self.estimate_tokens(messages)
        usable = self.usable_context()

        tool_outputs = 0
        pruned_outputs = 0
        for msg in messages:
            for part in msg.tool_results:
                tool_outputs += 1
                if _is_pruned(part):
                    pruned_outputs += 1

        return ContextStats(
            message_count=len(messages),
            estimated_tokens=estimated,
            context_limit=self.limits.context,
            output_reserve=self.limits.output,
            usable_context=usable,
            usage_percent=math.floor(estimated / usable * 100 + 0.5) if usable > 0 else 100,
            tool_outputs=tool_outputs,
            pruned_outputs=pruned_outputs,
        )

    @staticmethod
    def format_stats(stats: ContextStats) -> str:
        pruned = f" ({stats.pruned_outputs} pruned)" if stats.pruned_outputs else ""
        lines = [
            "Context Usage:",
            f"  Messages: {stats.message_count}",
            f"  Tokens: {format_tokens(stats.estimated_tokens)} / "
            f"{format_tokens(stats.usable_context)} ({stats.usage_percent}%)",
            f"  Tool outputs: {stats.tool_outputs}{pruned}",
        ]
        if stats.usage_percent > 70:
            lines.append("  Approaching context limit")
        return "\n".join(lines)
