"""Unit tests for karyo/agent/builtin_tools.py -- read, glob, grep, bash, write, edit.

All tests are pure async. Filesystem tests use the pytest tmp_path fixture
as the working directory. Commands that need portable output go through
sys.executable.
"""

import asyncio
import os
import sys
import time

import pytest

from karyo.agent.builtin_tools import (
    _MAX_OUTPUT_CHARS,
    PERMISSION_DENIED,
    BashInput,
    EditInput,
    GlobInput,
    GrepInput,
    ReadInput,
    WriteInput,
    bash_tool,
    edit_tool,
    glob_tool,
    grep_tool,
    read_tool,
    register_builtin_tools,
    write_tool,
)
from karyo.agent.permissions import PermissionGate
from karyo.agent.tools import ToolContext, ToolRegistry


@pytest.fixture
def approve_ctx(tmp_path, make_prompt) -> ToolContext:
    """Context whose gate approves every request once."""
    return ToolContext(working_dir=tmp_path, permissions=PermissionGate(make_prompt(*["y"] * 10)))


class TestRegistration:
    def test_all_six_registered(self):
        registry = ToolRegistry()
        register_builtin_tools(registry)
        assert registry.names == ["read", "glob", "grep", "bash", "write", "edit"]
        for definition in registry.definitions():
            assert definition["description"]
            assert definition["input_schema"]["type"] == "object"


# ---------------------------------------------------------------------------
# read
# ---------------------------------------------------------------------------


class TestRead:
    @pytest.mark.asyncio
    async def test_line_numbers(self, tmp_path, tool_ctx):
        (tmp_path / "a.txt").write_text("alpha\nbeta\ngamma")
        result = await read_tool(ReadInput(file_path="a.txt"), tool_ctx)
        assert not result.is_error
        assert result.output == "1\talpha\n2\tbeta\n3\tgamma"

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, tmp_path, tool_ctx):
        (tmp_path / "big.txt").write_text("\n".join(f"line{i}" for i in range(1, 11)))
        result = await read_tool(ReadInput(file_path="big.txt", offset=3, limit=2), tool_ctx)
        assert result.output.startswith("3\tline3\n4\tline4")
        assert "showing lines 3-4 of 10" in result.output

    @pytest.mark.asyncio
    async def test_long_lines_clipped(self, tmp_path, tool_ctx):
        (tmp_path / "wide.txt").write_text("y" * 5000)
        result = await read_tool(ReadInput(file_path="wide.txt"), tool_ctx)
        assert result.output.endswith("...")
        assert len(result.output) < 2100

    @pytest.mark.asyncio
    async def test_missing_file_suggests_similar(self, tmp_path, tool_ctx):
        (tmp_path / "config.py").write_text("x = 1")
        result = await read_tool(ReadInput(file_path="conf.py"), tool_ctx)
        assert result.is_error
        assert "File not found" in result.output
        assert "config.py" in result.output

    @pytest.mark.asyncio
    async def test_directory_rejected(self, tmp_path, tool_ctx):
        (tmp_path / "src").mkdir()
        result = await read_tool(ReadInput(file_path="src"), tool_ctx)
        assert result.is_error
        assert "is a directory" in result.output

    @pytest.mark.asyncio
    async def test_binary_extension_rejected(self, tmp_path, tool_ctx):
        (tmp_path / "logo.png").write_bytes(b"\x89PNG\r\n")
        result = await read_tool(ReadInput(file_path="logo.png"), tool_ctx)
        assert result.is_error
        assert "binary" in result.output


# ---------------------------------------------------------------------------
# glob
# ---------------------------------------------------------------------------


class TestGlob:
    @pytest.fixture
    def tree(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "node_modules").mkdir()
        files = {
            "a.py": tmp_path / "a.py",
            "b.py": tmp_path / "sub" / "b.py",
            "c.py": tmp_path / "node_modules" / "c.py",
            "notes.txt": tmp_path / "notes.txt",
        }
        now = time.time()
        for i, path in enumerate(files.values()):
            path.write_text("content")
            os.utime(path, (now - 100 + i, now - 100 + i))
        return files

    @pytest.mark.asyncio
    async def test_recursive_pattern_skips_ignored_dirs(self, tree, tool_ctx):
        result = await glob_tool(GlobInput(pattern="**/*.py"), tool_ctx)
        assert str(tree["a.py"]) in result.output
        assert str(tree["b.py"]) in result.output
        assert "node_modules" not in result.output
        assert "notes.txt" not in result.output

    @pytest.mark.asyncio
    async def test_newest_first(self, tree, tool_ctx):
        result = await glob_tool(GlobInput(pattern="*.py"), tool_ctx)
        lines = result.output.splitlines()
        assert lines == [str(tree["b.py"]), str(tree["a.py"])]

    @pytest.mark.asyncio
    async def test_no_match(self, tree, tool_ctx):
        result = await glob_tool(GlobInput(pattern="*.rs"), tool_ctx)
        assert not result.is_error
        assert "No files found" in result.output

    @pytest.mark.asyncio
    async def test_capped_at_one_hundred(self, tmp_path, tool_ctx):
        for i in range(105):
            (tmp_path / f"f{i}.txt").write_text("")
        result = await glob_tool(GlobInput(pattern="*.txt"), tool_ctx)
        assert "[Showing 100 of 105 matches." in result.output
        assert len([line for line in result.output.splitlines() if line.endswith(".txt")]) == 100

    @pytest.mark.asyncio
    async def test_bad_directory(self, tool_ctx):
        result = await glob_tool(GlobInput(pattern="*", directory="missing"), tool_ctx)
        assert result.is_error


# ---------------------------------------------------------------------------
# grep
# ---------------------------------------------------------------------------


class TestGrep:
    @pytest.mark.asyncio
    async def test_case_insensitive_grouped_by_file(self, tmp_path, tool_ctx):
        target = tmp_path / "hello.py"
        target.write_text("import os\nprint('Hello World')\n")
        result = await grep_tool(GrepInput(pattern="hello world"), tool_ctx)
        assert f"{target}:" in result.output
        assert "  2: print('Hello World')" in result.output

    @pytest.mark.asyncio
    async def test_include_filter(self, tmp_path, tool_ctx):
        (tmp_path / "a.py").write_text("needle\n")
        (tmp_path / "pkg").mkdir()
        (tmp_path / "pkg" / "b.py").write_text("needle\n")
        (tmp_path / "c.md").write_text("needle\n")
        result = await grep_tool(GrepInput(pattern="needle", include="*.py"), tool_ctx)
        assert "a.py" in result.output
        assert "b.py" in result.output
        assert "c.md" not in result.output

    @pytest.mark.asyncio
    async def test_brace_include(self, tmp_path, tool_ctx):
        (tmp_path / "a.js").write_text("needle\n")
        (tmp_path / "b.ts").write_text("needle\n")
        (tmp_path / "c.py").write_text("needle\n")
        result = await grep_tool(GrepInput(pattern="needle", include="*.{js,ts}"), tool_ctx)
        assert "a.js" in result.output
        assert "b.ts" in result.output
        assert "c.py" not in result.output

    @pytest.mark.asyncio
    async def test_invalid_regex(self, tool_ctx):
        result = await grep_tool(GrepInput(pattern="("), tool_ctx)
        assert result.is_error
        assert "Invalid regular expression" in result.output

    @pytest.mark.asyncio
    async def test_no_matches(self, tmp_path, tool_ctx):
        (tmp_path / "a.txt").write_text("nothing here")
        result = await grep_tool(GrepInput(pattern="needle"), tool_ctx)
        assert not result.is_error
        assert "No matches found" in result.output


# ---------------------------------------------------------------------------
# bash
# ---------------------------------------------------------------------------


class TestBash:
    @pytest.mark.asyncio
    async def test_success(self, tool_ctx):
        result = await bash_tool(BashInput(command=f'{sys.executable} -c "print(\'hi there\')"'), tool_ctx)
        assert not result.is_error
        assert "hi there" in result.output

    @pytest.mark.asyncio
    async def test_runs_in_working_dir(self, tmp_path, tool_ctx):
        (tmp_path / "marker.txt").write_text("")
        result = await bash_tool(BashInput(command="ls"), tool_ctx)
        assert "marker.txt" in result.output

    @pytest.mark.asyncio
    async def test_no_output(self, tool_ctx):
        result = await bash_tool(BashInput(command="true"), tool_ctx)
        assert result.output == "(Command completed successfully with no output)"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_error(self, tool_ctx):
        result = await bash_tool(BashInput(command=f'{sys.executable} -c "import sys; sys.exit(3)"'), tool_ctx)
        assert result.is_error
        assert "Exit code: 3" in result.output

    @pytest.mark.asyncio
    async def test_stderr_labeled(self, tool_ctx):
        result = await bash_tool(
            BashInput(command=f'{sys.executable} -c "import sys; sys.stderr.write(\'warning msg\\n\')"'),
            tool_ctx,
        )
        assert "STDERR:" in result.output
        assert "warning msg" in result.output

    @pytest.mark.asyncio
    async def test_output_truncated(self, tool_ctx):
        result = await bash_tool(BashInput(command=f'{sys.executable} -c "print(\'x\' * 50000)"'), tool_ctx)
        assert "[Output truncated...]" in result.output
        assert len(result.output) < _MAX_OUTPUT_CHARS + 100

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tool_ctx):
        started = time.monotonic()
        result = await bash_tool(
            BashInput(command=f'{sys.executable} -c "import time; time.sleep(30)"', timeout=1),
            tool_ctx,
        )
        assert result.is_error
        assert "timed out after 1s" in result.output
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_cancel_event_stops_command(self, tool_ctx):
        tool_ctx.cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, tool_ctx.cancel_event.set)

        result = await bash_tool(BashInput(command=f'{sys.executable} -c "import time; time.sleep(30)"'), tool_ctx)

        assert result.is_error
        assert "cancelled" in result.output.lower()

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, tool_ctx):
        task = asyncio.create_task(
            bash_tool(BashInput(command=f'{sys.executable} -c "import time; time.sleep(30)"'), tool_ctx)
        )
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=10)

    @pytest.mark.asyncio
    async def test_dangerous_command_denied(self, tmp_path, tool_ctx, prompt):
        (tmp_path / "build").mkdir()
        result = await bash_tool(BashInput(command="rm -rf build"), tool_ctx)

        assert result.is_error
        assert result.output == PERMISSION_DENIED
        assert prompt.calls == [("bash", "Execute command: rm -rf build")]
        assert (tmp_path / "build").exists()

    @pytest.mark.asyncio
    async def test_dangerous_command_approved(self, tmp_path, approve_ctx):
        victim = tmp_path / "victim.txt"
        victim.write_text("bye")
        result = await bash_tool(BashInput(command="rm victim.txt"), approve_ctx)
        assert not result.is_error
        assert not victim.exists()

    @pytest.mark.asyncio
    async def test_safe_command_does_not_prompt(self, tool_ctx, prompt):
        await bash_tool(BashInput(command="echo hello"), tool_ctx)
        assert prompt.calls == []


# ---------------------------------------------------------------------------
# write
# ---------------------------------------------------------------------------


class TestWrite:
    @pytest.mark.asyncio
    async def test_new_file_with_parents(self, tmp_path, tool_ctx, prompt):
        result = await write_tool(WriteInput(file_path="deep/dir/new.txt", content="one\ntwo"), tool_ctx)
        assert not result.is_error
        assert "Successfully wrote 2 lines" in result.output
        assert (tmp_path / "deep" / "dir" / "new.txt").read_text() == "one\ntwo"
        assert prompt.calls == []

    @pytest.mark.asyncio
    async def test_overwrite_denied(self, tmp_path, tool_ctx, prompt):
        target = tmp_path / "keep.txt"
        target.write_text("original")
        result = await write_tool(WriteInput(file_path=str(target), content="new"), tool_ctx)

        assert result.is_error
        assert result.output == PERMISSION_DENIED
        assert target.read_text() == "original"
        assert prompt.calls == [("write", f"Overwrite existing file: {target}")]

    @pytest.mark.asyncio
    async def test_overwrite_approved(self, tmp_path, approve_ctx):
        target = tmp_path / "keep.txt"
        target.write_text("original")
        result = await write_tool(WriteInput(file_path=str(target), content="new"), approve_ctx)
        assert not result.is_error
        assert target.read_text() == "new"


# ---------------------------------------------------------------------------
# edit
# ---------------------------------------------------------------------------


class TestEdit:
    @pytest.mark.asyncio
    async def test_replace_shows_diff_for_approval(self, tmp_path, make_prompt):
        prompt = make_prompt("y")
        ctx = ToolContext(working_dir=tmp_path, permissions=PermissionGate(prompt))
        target = tmp_path / "app.py"
        target.write_text("x = 1\ny = 2\n")

        result = await edit_tool(EditInput(file_path="app.py", old_string="y = 2", new_string="y = 3"), ctx)

        assert not result.is_error
        assert target.read_text() == "x = 1\ny = 3\n"
        assert "Replaced 1 occurrence(s)" in result.output
        action, details = prompt.calls[0]
        assert action == "edit"
        assert details.startswith(f"Edit file: {target.resolve()}")
        assert "-y = 2" in details
        assert "+y = 3" in details

    @pytest.mark.asyncio
    async def test_denied_leaves_file(self, tmp_path, tool_ctx):
        target = tmp_path / "app.py"
        target.write_text("x = 1\n")
        result = await edit_tool(EditInput(file_path="app.py", old_string="x = 1", new_string="x = 2"), tool_ctx)
        assert result.output == PERMISSION_DENIED
        assert target.read_text() == "x = 1\n"

    @pytest.mark.asyncio
    async def test_ambiguous_match_rejected(self, tmp_path, tool_ctx, prompt):
        (tmp_path / "dup.txt").write_text("foo\nfoo\n")
        result = await edit_tool(EditInput(file_path="dup.txt", old_string="foo", new_string="bar"), tool_ctx)
        assert result.is_error
        assert "Found 2 occurrences" in result.output
        assert prompt.calls == []

    @pytest.mark.asyncio
    async def test_replace_all(self, tmp_path, approve_ctx):
        target = tmp_path / "dup.txt"
        target.write_text("foo\nfoo\n")
        result = await edit_tool(
            EditInput(file_path="dup.txt", old_string="foo", new_string="bar", replace_all=True),
            approve_ctx,
        )
        assert target.read_text() == "bar\nbar\n"
        assert "Replaced 2 occurrence(s)" in result.output

    @pytest.mark.asyncio
    async def test_not_found_hints_similar_lines(self, tmp_path, tool_ctx):
        (tmp_path / "app.py").write_text("def f():\n    return 1\n")
        result = await edit_tool(
            EditInput(file_path="app.py", old_string="return 1 + 1", new_string="return 2"),
            tool_ctx,
        )
        assert result.is_error
        assert "Could not find the specified text" in result.output
        assert "Line 2:" in result.output

    @pytest.mark.asyncio
    async def test_missing_file(self, tool_ctx):
        result = await edit_tool(EditInput(file_path="nope.py", old_string="a", new_string="b"), tool_ctx)
        assert result.is_error
        assert "File not found" in result.output

    @pytest.mark.asyncio
    async def test_empty_old_string_rejected(self, tmp_path, tool_ctx):
        (tmp_path / "a.txt").write_text("abc")
        result = await edit_tool(EditInput(file_path="a.txt", old_string="", new_string="b"), tool_ctx)
        assert result.is_error
