"""Tool contract and registry.

Provides:
- Tool: name, description, pydantic input model, async handler
- ToolContext: working directory, permission gate, cancellation signal
- ToolRegistry: registers tools, validates arguments, dispatches calls

Nothing raised inside a tool crosses the registry boundary: every failure
comes back as an error-flagged ToolResult the model can react to.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from karyo.agent.permissions import PermissionGate

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    output: str
    is_error: bool = False


@dataclass
class ToolContext:
    """Per-call environment handed to every tool."""

    working_dir: Path
    permissions: PermissionGate
    cancel_event: asyncio.Event | None = None
    bash_timeout: int = 120

    def resolve(self, path_str: str) -> Path:
        """Resolve a tool path argument against the working directory."""
        path = Path(path_str).expanduser()
        return path if path.is_absolute() else (self.working_dir / path).resolve()


ToolHandler = Callable[[Any, ToolContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler = field(repr=False)

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def _format_validation_error(name: str, error: ValidationError) -> str:
    problems = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "(arguments)"
        problems.append(f"  {loc}: {err['msg']}")
    return f"Error: Invalid arguments for {name}:\n" + "\n".join(problems)


class ToolRegistry:
    """Registers tools and dispatches tool calls from the model."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing already registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """Tool catalogue in provider-neutral form (name, description, input_schema)."""
        return [tool.definition() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any], ctx: ToolContext) -> ToolResult:
        """Dispatch a tool call. Never raises except on cancellation."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(f'Error: Unknown tool "{name}"', is_error=True)

        try:
            args = tool.input_model.model_validate(arguments or {})
        except ValidationError as e:
            return ToolResult(_format_validation_error(name, e), is_error=True)

        try:
            return await tool.handler(args, ctx)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolResult(f"Error executing {name}: {e}", is_error=True)
