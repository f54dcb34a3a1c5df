"""Permission gate for destructive tool actions.

Tools ask the gate before running dangerous shell commands, overwriting
files, or applying edits. "always" answers are remembered per gate, and
one gate lives as long as one session, so approvals never leak between
sessions in the same process.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

# Async callable: (action, details) -> raw user answer
PromptFn = Callable[[str, str], Awaitable[str]]

DANGEROUS_BASH_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^rm\s",
        r"^rm$",
        r"\brm\s+-rf?\s",
        r"\brmdir\b",
        r"^sudo\s",
        r"^su\s",
        r"\bchmod\b",
        r"\bchown\b",
        r"\bgit\s+push\b",
        r"\bgit\s+reset\s+--hard\b",
        r"\bgit\s+clean\b",
        r"\bdd\s",
        r"\bmkfs\b",
        r">\s*/dev/",
        r"\bkill\s+-9\b",
        r"\bpkill\b",
        r"\bshutdown\b",
        r"\breboot\b",
    )
)

_YES = frozenset({"y", "yes"})
_ALWAYS = frozenset({"a", "always"})


def is_dangerous(command: str) -> bool:
    """Check a shell command against the dangerous pattern list."""
    trimmed = command.strip()
    return any(pattern.search(trimmed) for pattern in DANGEROUS_BASH_PATTERNS)


async def stdin_prompt(action: str, details: str) -> str:
    """Default prompt: print the request and read one answer from stdin."""
    print("\n" + "=" * 60)
    print(f"Permission required: {action}")
    print("-" * 60)
    print(details)
    print("=" * 60)
    try:
        return await asyncio.to_thread(input, "Allow? [y/N/always] ")
    except EOFError:
        return ""


class PermissionGate:
    """Asks the user before destructive actions; remembers "always" answers."""

    def __init__(self, prompt: PromptFn | None = None) -> None:
        self._prompt = prompt or stdin_prompt
        self._approved: set[tuple[str, str]] = set()

    def is_approved(self, action: str, details: str) -> bool:
        return (action, details) in self._approved

    async def request_approval(self, action: str, details: str) -> bool:
        """Return True if the action may proceed. Denies by default."""
        if self.is_approved(action, details):
            logger.debug("Permission for %s already granted this session", action)
            return True

        answer = (await self._prompt(action, details)).strip().lower()

        if answer in _YES:
            logger.info("Permission granted once: %s", action)
            return True
        if answer in _ALWAYS:
            self._approved.add((action, details))
            logger.info("Permission granted for session: %s", action)
            return True

        logger.info("Permission denied: %s", action)
        return False

    def reset(self) -> None:
        self._approved.clear()
