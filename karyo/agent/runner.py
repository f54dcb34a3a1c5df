"""Agent runner: drives one conversation through the model/tool loop.

Each user turn:
1. Appends the user message and conditions the history (prune/compact)
2. Streams the model; text deltas are forwarded as they arrive
3. Executes requested tools sequentially, answering every call in one
   user message, then asks the model again
4. Stops when the model answers without tool calls, max_steps is hit,
   or cancel() is called

The conversation always stays resumable: every tool call appended to
history is answered before the next model request.
"""

from __future__ import annotations

import asyncio
import logging
import platform
from collections.abc import AsyncGenerator
from datetime import date
from pathlib import Path

from karyo.agent.builtin_tools import register_builtin_tools
from karyo.agent.context import ContextManager, ContextStats
from karyo.agent.llm import LanguageModel, ModelError
from karyo.agent.models import (
    ContextAction,
    Message,
    ModelResponse,
    ToolResultPart,
    TurnEvent,
    Usage,
)
from karyo.agent.permissions import PermissionGate
from karyo.agent.tools import ToolContext, ToolRegistry
from karyo.config import Settings

logger = logging.getLogger(__name__)

CONTEXT_WARNING_PERCENT = 70
CANCELLED_RESULT = "Tool execution cancelled"


def build_system_prompt(working_dir: Path, registry: ToolRegistry) -> str:
    catalogue = "\n".join(
        f"- {tool.name}: {tool.description.split('. ')[0].rstrip('.')}"
        for tool in (registry.get(name) for name in registry.names)
        if tool is not None
    )
    return f"""\
You are a helpful coding assistant with access to tools for file operations and command execution.

Environment:
- Working directory: {working_dir}
- Platform: {platform.system().lower()}
- Date: {date.today().isoformat()}

Guidelines:
1. Always read files before editing them to understand their current content
2. Make small, targeted edits rather than rewriting entire files
3. Run tests after making changes when applicable
4. Ask clarifying questions if requirements are unclear
5. Explain your reasoning before making changes

Available tools:
{catalogue}

When editing files, make sure to match the exact text including whitespace and indentation."""


class Agent:
    """Owns one conversation and runs its turns.

    The conversation list is replaced wholesale after pruning or
    compaction and truncated by clear(); it is never shared with another
    Agent.
    """

    def __init__(
        self,
        settings: Settings,
        model: LanguageModel,
        registry: ToolRegistry | None = None,
        permissions: PermissionGate | None = None,
        context_manager: ContextManager | None = None,
    ) -> None:
        self._settings = settings
        self.model = model
        if registry is None:
            registry = ToolRegistry()
            register_builtin_tools(registry)
        self.registry = registry
        self.permissions = permissions or PermissionGate()
        self.context = context_manager or ContextManager(model.model_id)
        self.messages: list[Message] = []
        self.cancel_event = asyncio.Event()

    @property
    def working_dir(self) -> Path:
        return self._settings.workspace

    def _tool_context(self) -> ToolContext:
        return ToolContext(
            working_dir=self.working_dir,
            permissions=self.permissions,
            cancel_event=self.cancel_event,
            bash_timeout=self._settings.bash_timeout,
        )

    async def run_turn(self, user_text: str) -> AsyncGenerator[TurnEvent, None]:
        """Run one user turn, yielding TurnEvents until done or error."""
        self.cancel_event.clear()
        request = Message(role="user", content=user_text)
        self.messages.append(request)

        conditioned, action = await self.context.process_messages(self.messages, self.model)
        if action is ContextAction.COMPACTED:
            # The summary absorbed the request; it still needs an answer
            conditioned = [*conditioned, request]
        if action is not ContextAction.NONE:
            self.messages = conditioned
        yield TurnEvent(type="context", action=action)

        system_prompt = build_system_prompt(self.working_dir, self.registry)
        tools = self.registry.definitions()
        ctx = self._tool_context()
        usage = Usage()

        for step in range(self._settings.max_steps):
            if self.cancel_event.is_set():
                logger.info("Turn stopped by user after %d step(s)", step)
                break
            response: ModelResponse | None = None
            try:
                async for event in self.model.stream(system_prompt, list(self.messages), tools):
                    if event.type == "text_delta":
                        yield TurnEvent(type="text_delta", text=event.text)
                    elif event.type == "response":
                        response = event.response
            except ModelError as e:
                logger.error("Model call failed at step %d: %s", step + 1, e)
                yield TurnEvent(type="error", text=str(e))
                return

            if response is None:
                logger.error("Model stream ended without a response at step %d", step + 1)
                yield TurnEvent(type="error", text="Model stream ended without a response")
                return

            usage.add(response.usage)
            if response.parts:
                self.messages.append(Message(role="assistant", content=tuple(response.parts)))

            calls = response.tool_calls
            if not calls:
                break

            results: list[ToolResultPart] = []
            try:
                for call in calls:
                    if self.cancel_event.is_set():
                        break
                    yield TurnEvent(
                        type="tool_start", tool_name=call.name, tool_id=call.id, arguments=call.arguments,
                    )
                    result = await self.registry.execute(call.name, call.arguments, ctx)
                    results.append(ToolResultPart(call_id=call.id, result=result.output, is_error=result.is_error))
                    yield TurnEvent(
                        type="tool_end",
                        tool_name=call.name,
                        tool_id=call.id,
                        text=result.output,
                        is_error=result.is_error,
                    )
            finally:
                # Answer every call, even when interrupted mid-batch
                for call in calls[len(results):]:
                    results.append(ToolResultPart(call_id=call.id, result=CANCELLED_RESULT, is_error=True))
                self.messages.append(Message(role="user", content=tuple(results)))
        else:
            logger.warning("Turn reached max_steps=%d", self._settings.max_steps)

        stats = self.stats()
        if stats.usage_percent > CONTEXT_WARNING_PERCENT:
            yield TurnEvent(
                type="warning",
                text=f"Context usage at {stats.usage_percent}%. Older tool outputs will be pruned soon.",
            )
        yield TurnEvent(type="done", usage=usage)

    def cancel(self) -> None:
        """Stop the running turn: bash is interrupted, remaining calls are skipped."""
        self.cancel_event.set()

    def clear(self) -> None:
        self.messages = []
        logger.info("Conversation cleared")

    def stats(self) -> ContextStats:
        return self.context.get_stats(self.messages)

    def switch_model(self, model: LanguageModel) -> None:
        """Use a different model from the next turn; history is kept."""
        logger.info("Switching model %s -> %s", self.model.model_id, model.model_id)
        self.model = model
        self.context = ContextManager(model.model_id)
