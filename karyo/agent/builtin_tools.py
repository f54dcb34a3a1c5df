"""Built-in tools: read, glob, grep, bash, write, edit.

Each tool takes a validated pydantic input model plus the ToolContext and
returns a ToolResult. Destructive operations consult the permission gate
before touching anything.
"""

from __future__ import annotations

import asyncio
import difflib
import logging
import os
import re
import signal
from pathlib import Path

from pydantic import BaseModel, Field

from karyo.agent.permissions import is_dangerous
from karyo.agent.tools import Tool, ToolContext, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 600  # seconds
_MAX_OUTPUT_CHARS = 30_000
_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
_MAX_GREP_FILE_SIZE = 1024 * 1024  # 1MB
_MAX_LINE_CHARS = 2000
_MAX_RESULTS = 100

PERMISSION_DENIED = "Permission denied by user"

_BINARY_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp",
    ".pdf", ".zip", ".tar", ".gz", ".rar", ".7z",
    ".exe", ".dll", ".so", ".dylib",
    ".mp3", ".mp4", ".avi", ".mov", ".wav",
    ".ttf", ".otf", ".woff", ".woff2",
    ".pyc",
})

_IGNORED_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", ".next", "coverage",
    "__pycache__", ".venv", ".mypy_cache", ".pytest_cache",
})


def _is_ignored(path: Path, base: Path) -> bool:
    try:
        parts = path.relative_to(base).parts
    except ValueError:
        parts = path.parts
    return any(part in _IGNORED_DIRS for part in parts[:-1])


def _expand_braces(pattern: str) -> list[str]:
    """Expand one level of {a,b} alternatives: '*.{js,jsx}' -> ['*.js', '*.jsx']."""
    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end():]
    expanded: list[str] = []
    for option in match.group(1).split(","):
        expanded.extend(_expand_braces(f"{head}{option}{tail}"))
    return expanded


def _find_files(base: Path, pattern: str) -> list[Path]:
    """Files under base matching a glob pattern, skipping build/vendor dirs.

    Patterns without a slash match file names at any depth.
    """
    seen: set[Path] = set()
    files: list[Path] = []
    for expanded in _expand_braces(pattern):
        candidates = base.glob(expanded) if "/" in expanded else base.rglob(expanded)
        for path in candidates:
            if path in seen or not path.is_file() or _is_ignored(path, base):
                continue
            seen.add(path)
            files.append(path)
    return files


# ---------------------------------------------------------------------------
# read
# ---------------------------------------------------------------------------


class ReadInput(BaseModel):
    file_path: str = Field(description="The absolute path to the file to read")
    offset: int = Field(1, ge=1, description="Line number to start reading from (1-indexed)")
    limit: int = Field(2000, ge=1, description="Maximum number of lines to read (default: 2000)")


async def read_tool(args: ReadInput, ctx: ToolContext) -> ToolResult:
    """Read a file with line numbers."""
    path = ctx.resolve(args.file_path)

    if not path.exists():
        hint = ""
        if path.parent.is_dir():
            stem = path.name.lower()[:3]
            similar = sorted(p for p in path.parent.iterdir() if stem in p.name.lower())[:5]
            if similar:
                hint = "\n\nDid you mean one of these?\n" + "\n".join(f"  - {p}" for p in similar)
        return ToolResult(f'Error: File not found: "{path}"{hint}', is_error=True)

    if path.is_dir():
        return ToolResult(
            f'Error: "{path}" is a directory, not a file. '
            "Use the glob or bash tool to list directory contents.",
            is_error=True,
        )

    ext = path.suffix.lower()
    if ext in _BINARY_EXTENSIONS:
        return ToolResult(
            f'Error: "{path}" appears to be a binary file ({ext}). Cannot display binary content.',
            is_error=True,
        )

    size = path.stat().st_size
    if size > _MAX_FILE_SIZE:
        return ToolResult(
            f"Error: File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use bash with head/tail or grep to inspect it.",
            is_error=True,
        )

    content = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
    lines = content.split("\n")

    start = args.offset - 1
    end = min(len(lines), start + args.limit)
    width = len(str(end))

    formatted = []
    for number, line in enumerate(lines[start:end], start=start + 1):
        if len(line) > _MAX_LINE_CHARS:
            line = line[:_MAX_LINE_CHARS] + "..."
        formatted.append(f"{number:>{width}}\t{line}")

    output = "\n".join(formatted)
    if end < len(lines):
        output += (
            f"\n\n[Truncated: showing lines {args.offset}-{end} of {len(lines)}. "
            "Use offset/limit to read more.]"
        )
    return ToolResult(output)


# ---------------------------------------------------------------------------
# glob
# ---------------------------------------------------------------------------


class GlobInput(BaseModel):
    pattern: str = Field(description="Glob pattern to match files (e.g., '**/*.py', 'src/*.js')")
    directory: str | None = Field(None, description="Directory to search in (defaults to working directory)")


async def glob_tool(args: GlobInput, ctx: ToolContext) -> ToolResult:
    """Find files by pattern, newest first."""
    base = ctx.resolve(args.directory) if args.directory else ctx.working_dir
    if not base.is_dir():
        return ToolResult(f'Error: "{base}" is not a directory', is_error=True)

    def _search() -> list[Path]:
        files = _find_files(base, args.pattern)
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    matches = await asyncio.to_thread(_search)
    if not matches:
        return ToolResult(f'No files found matching pattern "{args.pattern}" in {base}')

    output = "\n".join(str(p) for p in matches[:_MAX_RESULTS])
    if len(matches) > _MAX_RESULTS:
        output += (
            f"\n\n[Showing {_MAX_RESULTS} of {len(matches)} matches. "
            "Refine your pattern to see more specific results.]"
        )
    return ToolResult(output)


# ---------------------------------------------------------------------------
# grep
# ---------------------------------------------------------------------------


class GrepInput(BaseModel):
    pattern: str = Field(description="Regular expression pattern to search for")
    directory: str | None = Field(None, description="Directory to search in (defaults to working directory)")
    include: str | None = Field(None, description="Glob pattern to filter files (e.g., '*.py', '*.{js,jsx}')")


async def grep_tool(args: GrepInput, ctx: ToolContext) -> ToolResult:
    """Case-insensitive regex search, grouped by file."""
    base = ctx.resolve(args.directory) if args.directory else ctx.working_dir
    if not base.is_dir():
        return ToolResult(f'Error: "{base}" is not a directory', is_error=True)

    try:
        regex = re.compile(args.pattern, re.IGNORECASE)
    except re.error as e:
        return ToolResult(f'Error: Invalid regular expression "{args.pattern}": {e}', is_error=True)

    def _search() -> list[tuple[Path, int, str]]:
        found: list[tuple[Path, int, str]] = []
        for path in sorted(_find_files(base, args.include or "*")):
            if path.suffix.lower() in _BINARY_EXTENSIONS:
                continue
            try:
                if path.stat().st_size > _MAX_GREP_FILE_SIZE:
                    continue
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(text.split("\n"), start=1):
                if regex.search(line):
                    found.append((path, number, line.strip()[:200]))
                    if len(found) >= _MAX_RESULTS:
                        return found
        return found

    matches = await asyncio.to_thread(_search)
    if not matches:
        return ToolResult(f'No matches found for pattern "{args.pattern}" in {base}')

    lines: list[str] = []
    current: Path | None = None
    for path, number, text in matches:
        if path != current:
            lines.append(f"\n{path}:")
            current = path
        lines.append(f"  {number}: {text}")

    output = "\n".join(lines).strip()
    if len(matches) >= _MAX_RESULTS:
        output += (
            f"\n\n[Showing first {_MAX_RESULTS} matches. "
            "Refine your pattern for more specific results.]"
        )
    return ToolResult(output)


# ---------------------------------------------------------------------------
# bash
# ---------------------------------------------------------------------------


class BashInput(BaseModel):
    command: str = Field(description="The bash command to execute")
    timeout: int | None = Field(
        None, ge=1, le=_MAX_BASH_TIMEOUT,
        description="Timeout in seconds (default 120, max 600)",
    )


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


async def _terminate(proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> None:
    _kill(proc)
    communicate.cancel()
    await proc.wait()


async def bash_tool(args: BashInput, ctx: ToolContext) -> ToolResult:
    """Execute a shell command in the working directory.

    Dangerous commands need approval. The subprocess is killed on timeout,
    on ctx.cancel_event, or when the calling task is cancelled.
    """
    command = args.command
    if is_dangerous(command):
        allowed = await ctx.permissions.request_approval("bash", f"Execute command: {command}")
        if not allowed:
            return ToolResult(PERMISSION_DENIED, is_error=True)

    timeout = min(args.timeout or ctx.bash_timeout, _MAX_BASH_TIMEOUT)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(ctx.working_dir),
            start_new_session=True,
        )
    except OSError as e:
        return ToolResult(f"Error executing command: {e}", is_error=True)

    communicate = asyncio.ensure_future(proc.communicate())
    waiters: set[asyncio.Future] = {communicate}
    cancelled = None
    if ctx.cancel_event is not None:
        cancelled = asyncio.ensure_future(ctx.cancel_event.wait())
        waiters.add(cancelled)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _terminate(proc, communicate)
        raise
    finally:
        if cancelled is not None:
            cancelled.cancel()

    if communicate not in done:
        await _terminate(proc, communicate)
        if cancelled is not None and cancelled in done:
            logger.info("Command cancelled: %s", command)
            return ToolResult(f"Command cancelled.\nCommand: {command}", is_error=True)
        logger.info("Command timed out after %ds: %s", timeout, command)
        return ToolResult(f"Command timed out after {timeout}s.\nCommand: {command}", is_error=True)

    stdout, stderr = communicate.result()
    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    output = "\n".join(parts)

    if len(output) > _MAX_OUTPUT_CHARS:
        output = output[:_MAX_OUTPUT_CHARS] + "\n\n[Output truncated...]"

    if not output:
        output = "(Command completed successfully with no output)" if proc.returncode == 0 else "(No output)"
    if proc.returncode != 0:
        output += f"\n\nExit code: {proc.returncode}"

    return ToolResult(output, is_error=proc.returncode != 0)


# ---------------------------------------------------------------------------
# write
# ---------------------------------------------------------------------------


class WriteInput(BaseModel):
    file_path: str = Field(description="The absolute path to the file to write")
    content: str = Field(description="The content to write to the file")


async def write_tool(args: WriteInput, ctx: ToolContext) -> ToolResult:
    """Create or overwrite a file; overwriting needs approval."""
    path = ctx.resolve(args.file_path)

    if path.is_dir():
        return ToolResult(f'Error: "{path}" is a directory', is_error=True)

    if path.exists():
        allowed = await ctx.permissions.request_approval("write", f"Overwrite existing file: {path}")
        if not allowed:
            return ToolResult(PERMISSION_DENIED, is_error=True)

    await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(path.write_text, args.content, encoding="utf-8")

    lines = args.content.count("\n") + 1
    size = len(args.content.encode("utf-8"))
    return ToolResult(f"Successfully wrote {lines} lines ({size} bytes) to {path}")


# ---------------------------------------------------------------------------
# edit
# ---------------------------------------------------------------------------


class EditInput(BaseModel):
    file_path: str = Field(description="The absolute path to the file to edit")
    old_string: str = Field(description="The exact text to find and replace")
    new_string: str = Field(description="The text to replace it with")
    replace_all: bool = Field(False, description="Replace all occurrences (default: false, only replace first)")


def unified_diff(path: Path, before: str, after: str) -> str:
    return "".join(difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"{path} (original)",
        tofile=f"{path} (modified)",
    ))


def _similar_lines(content: str, needle: str) -> str:
    fragment = needle.lower().strip()[:20]
    hits = []
    for number, line in enumerate(content.split("\n"), start=1):
        stripped = line.lower().strip()
        if not stripped:
            continue
        if fragment in stripped or stripped[:20] in fragment:
            hits.append(f"  Line {number}: {line[:100]}")
        if len(hits) == 3:
            break
    return "\n\nSimilar lines found:\n" + "\n".join(hits) if hits else ""


async def edit_tool(args: EditInput, ctx: ToolContext) -> ToolResult:
    """Find-and-replace in a file after showing the diff for approval."""
    path = ctx.resolve(args.file_path)

    if not args.old_string:
        return ToolResult("Error: old_string must not be empty", is_error=True)
    if not path.is_file():
        return ToolResult(f"Error: File not found: {path}", is_error=True)

    content = await asyncio.to_thread(path.read_text, encoding="utf-8")

    occurrences = content.count(args.old_string)
    if occurrences == 0:
        return ToolResult(
            f"Error: Could not find the specified text in {path}"
            f"{_similar_lines(content, args.old_string)}\n\n"
            "Make sure the old_string matches exactly, including whitespace and indentation.",
            is_error=True,
        )
    if occurrences > 1 and not args.replace_all:
        return ToolResult(
            f"Error: Found {occurrences} occurrences of the text. Set replace_all=true to "
            "replace all, or provide more context to make the match unique.",
            is_error=True,
        )

    if args.replace_all:
        new_content = content.replace(args.old_string, args.new_string)
    else:
        new_content = content.replace(args.old_string, args.new_string, 1)

    diff = unified_diff(path, content, new_content)
    allowed = await ctx.permissions.request_approval("edit", f"Edit file: {path}\n\n{diff}")
    if not allowed:
        return ToolResult(PERMISSION_DENIED, is_error=True)

    await asyncio.to_thread(path.write_text, new_content, encoding="utf-8")

    replaced = occurrences if args.replace_all else 1
    return ToolResult(f"Successfully edited {path}\nReplaced {replaced} occurrence(s)\n\n{diff}")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

BUILTIN_TOOLS: tuple[Tool, ...] = (
    Tool(
        name="read",
        description=(
            "Read the contents of a file. Returns the file content with line numbers. "
            "Use offset and limit parameters to read specific portions of large files."
        ),
        input_model=ReadInput,
        handler=read_tool,
    ),
    Tool(
        name="glob",
        description=(
            "Find files matching a glob pattern. Returns absolute paths sorted by modification "
            "time (most recent first). Ignores .git, node_modules and common build directories."
        ),
        input_model=GlobInput,
        handler=glob_tool,
    ),
    Tool(
        name="grep",
        description=(
            "Search for a pattern in files using regular expressions (case-insensitive). "
            "Returns matching lines with file paths and line numbers. "
            "Use the 'include' parameter to filter by file name (e.g., '*.py')."
        ),
        input_model=GrepInput,
        handler=grep_tool,
    ),
    Tool(
        name="bash",
        description=(
            "Execute a bash command in the working directory. "
            "Dangerous commands (rm, sudo, git push, etc.) will prompt for user confirmation. "
            "Default timeout is 2 minutes."
        ),
        input_model=BashInput,
        handler=bash_tool,
    ),
    Tool(
        name="write",
        description=(
            "Write content to a file. Creates the file if it doesn't exist, "
            "or overwrites it if it does (with user confirmation). "
            "Parent directories are created automatically if needed."
        ),
        input_model=WriteInput,
        handler=write_tool,
    ),
    Tool(
        name="edit",
        description=(
            "Edit a file by finding and replacing text. "
            "The old_string must match exactly (including whitespace). "
            "Shows a diff preview and asks for confirmation before applying changes. "
            "Use replace_all=true to replace all occurrences."
        ),
        input_model=EditInput,
        handler=edit_tool,
    ),
)


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register read, glob, grep, bash, write and edit with the registry."""
    for tool in BUILTIN_TOOLS:
        registry.register(tool)
