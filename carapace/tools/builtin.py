"""Built-in tools: read, write, edit, ls, glob, grep, bash.

All file tools are confined to the execution context's working
directory. Mutating tools (write, edit, bash) require approval.
Expected failures (missing file, path escape) are returned as failed
outcomes rather than raised.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from pydantic import BaseModel, Field

from carapace.tools.registry import (
    EXECUTE_SHELL,
    READ_FILES,
    WRITE_FILES,
    Tool,
    ToolExecutionContext,
    ToolOutcome,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_LISTING = 500
_MAX_GREP_MATCHES = 200


def _validate_path(path_str: str, workspace: Path) -> Path:
    """Resolve a path and check it stays under workspace.

    Raises ValueError if the path escapes.
    """
    root = workspace.resolve()
    candidate = Path(path_str).expanduser()
    target = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
    if not target.is_relative_to(root):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _escapes_workspace(pattern: str) -> bool:
    """True for absolute glob patterns or ones that climb out with '..'."""
    candidate = Path(pattern)
    return candidate.is_absolute() or ".." in candidate.parts


def _inside(path: Path, root: Path) -> bool:
    # Symlinks can point anywhere; check where they land
    return path.resolve().is_relative_to(root)


def _truncate(text: str, label: str = "output") -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class ReadInput(BaseModel):
    path: str = Field(description="File path (relative or absolute within workspace)")
    offset: int = Field(0, ge=0, description="Line offset to start reading from (0-indexed)")
    limit: int = Field(0, ge=0, description="Number of lines to read (0 = all)")


class WriteInput(BaseModel):
    path: str = Field(description="File path (relative or absolute within workspace)")
    content: str = Field(description="Content to write to the file")


class EditInput(BaseModel):
    path: str = Field(description="File to edit")
    old_text: str = Field(min_length=1, description="Exact text to replace")
    new_text: str = Field(description="Replacement text")
    replace_all: bool = Field(False, description="Replace every occurrence instead of exactly one")


class LsInput(BaseModel):
    path: str = Field(".", description="Directory to list")


class GlobInput(BaseModel):
    pattern: str = Field(description="Glob pattern, e.g. **/*.py")
    path: str = Field(".", description="Directory to search from")


class GrepInput(BaseModel):
    pattern: str = Field(description="Regular expression to search for")
    path: str = Field(".", description="File or directory to search")
    include: str | None = Field(None, description="Only search files matching this glob")
    case_insensitive: bool = False


class BashInput(BaseModel):
    command: str = Field(description="Shell command to execute")
    timeout: int = Field(30, ge=1, le=_MAX_BASH_TIMEOUT, description="Timeout in seconds")


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_tool(params: ReadInput, context: ToolExecutionContext) -> ToolOutcome:
    try:
        target = _validate_path(params.path, context.working_directory)
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    if not target.exists():
        return ToolOutcome.fail(f"File not found: {params.path}")
    if not target.is_file():
        return ToolOutcome.fail(f"Not a file: {params.path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE and params.limit == 0:
        return ToolOutcome.fail(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions."
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if params.offset > 0 or params.limit > 0:
        lines = content.splitlines(keepends=True)[params.offset:]
        if params.limit > 0:
            lines = lines[:params.limit]
        content = "".join(lines)

    return ToolOutcome.ok(content if content else "(empty file)")


async def write_tool(params: WriteInput, context: ToolExecutionContext) -> ToolOutcome:
    try:
        target = _validate_path(params.path, context.working_directory)
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, params.content, encoding="utf-8")
    return ToolOutcome.ok(
        f"File written successfully: {target}\nSize: {len(params.content):,} bytes"
    )


async def edit_tool(params: EditInput, context: ToolExecutionContext) -> ToolOutcome:
    try:
        target = _validate_path(params.path, context.working_directory)
    except ValueError as e:
        return ToolOutcome.fail(str(e))
    if not target.is_file():
        return ToolOutcome.fail(f"File not found: {params.path}")

    original = await asyncio.to_thread(target.read_text, encoding="utf-8")
    occurrences = original.count(params.old_text)
    if occurrences == 0:
        return ToolOutcome.fail(f"Text not found in {params.path}")
    if occurrences > 1 and not params.replace_all:
        return ToolOutcome.fail(
            f"Text occurs {occurrences} times in {params.path}; "
            "provide more context or set replace_all"
        )

    count = -1 if params.replace_all else 1
    updated = original.replace(params.old_text, params.new_text, count)
    await asyncio.to_thread(target.write_text, updated, encoding="utf-8")
    replaced = occurrences if params.replace_all else 1
    return ToolOutcome.ok(f"Edited {params.path}: {replaced} replacement(s)")


async def ls_tool(params: LsInput, context: ToolExecutionContext) -> ToolOutcome:
    try:
        target = _validate_path(params.path, context.working_directory)
    except ValueError as e:
        return ToolOutcome.fail(str(e))
    if not target.is_dir():
        return ToolOutcome.fail(f"Not a directory: {params.path}")

    entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name))
    lines = [f"{p.name}/" if p.is_dir() else p.name for p in entries[:_MAX_LISTING]]
    if len(entries) > _MAX_LISTING:
        lines.append(f"... ({len(entries) - _MAX_LISTING} more entries)")
    return ToolOutcome.ok("\n".join(lines) if lines else "(empty directory)")


async def glob_tool(params: GlobInput, context: ToolExecutionContext) -> ToolOutcome:
    try:
        base = _validate_path(params.path, context.working_directory)
    except ValueError as e:
        return ToolOutcome.fail(str(e))
    if not base.is_dir():
        return ToolOutcome.fail(f"Not a directory: {params.path}")
    if _escapes_workspace(params.pattern):
        return ToolOutcome.fail(f"Pattern must stay inside the workspace: {params.pattern}")

    root = context.working_directory.resolve()

    def _search() -> list[str]:
        return sorted(
            str(p.relative_to(base))
            for p in base.glob(params.pattern)
            if p.is_file() and _inside(p, root)
        )

    matches = await asyncio.to_thread(_search)
    if not matches:
        return ToolOutcome.ok(f"No files match {params.pattern}")
    lines = matches[:_MAX_LISTING]
    if len(matches) > _MAX_LISTING:
        lines.append(f"... ({len(matches) - _MAX_LISTING} more matches)")
    return ToolOutcome.ok("\n".join(lines))


async def grep_tool(params: GrepInput, context: ToolExecutionContext) -> ToolOutcome:
    try:
        base = _validate_path(params.path, context.working_directory)
    except ValueError as e:
        return ToolOutcome.fail(str(e))
    try:
        regex = re.compile(params.pattern, re.IGNORECASE if params.case_insensitive else 0)
    except re.error as e:
        return ToolOutcome.fail(f"Invalid pattern: {e}")
    if params.include and _escapes_workspace(params.include):
        return ToolOutcome.fail(f"Include must stay inside the workspace: {params.include}")

    root = context.working_directory.resolve()

    def _search() -> list[str]:
        if base.is_file():
            files = [base]
        else:
            files = sorted(
                p for p in base.rglob(params.include or "*")
                if p.is_file() and _inside(p, root)
            )
        found: list[str] = []
        for file in files:
            if file.stat().st_size > _MAX_FILE_SIZE:
                continue
            try:
                text = file.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    found.append(f"{file.relative_to(root)}:{number}: {line}")
                    if len(found) >= _MAX_GREP_MATCHES:
                        return found
        return found

    matches = await asyncio.to_thread(_search)
    if not matches:
        return ToolOutcome.ok(f"No matches for {params.pattern}")
    return ToolOutcome.ok(_truncate("\n".join(matches)))


async def bash_tool(params: BashInput, context: ToolExecutionContext) -> ToolOutcome:
    """Run a shell command in the working directory."""
    workspace = context.working_directory
    workspace.mkdir(parents=True, exist_ok=True)
    env = {**os.environ, **context.env_vars} if context.env_vars else None
    timeout = min(params.timeout, context.timeout_secs)

    proc = await asyncio.create_subprocess_shell(
        params.command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ToolOutcome.fail(
            f"Command timed out after {timeout:g}s.\nCommand: {params.command}"
        )
    except asyncio.CancelledError:
        # The child outlives a cancelled communicate() unless killed here
        proc.kill()
        await proc.wait()
        raise

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"))
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    output = "\n".join(parts) if parts else "(no output)"

    if proc.returncode != 0:
        return ToolOutcome.fail(output, output=output)
    return ToolOutcome.ok(output)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def builtin_tools() -> list[Tool]:
    return [
        Tool("read", "Read a file from the workspace", ReadInput, read_tool,
             capabilities=frozenset({READ_FILES})),
        Tool("write", "Write content to a file in the workspace", WriteInput, write_tool,
             capabilities=frozenset({WRITE_FILES}), requires_approval=True),
        Tool("edit", "Replace exact text in a workspace file", EditInput, edit_tool,
             capabilities=frozenset({READ_FILES, WRITE_FILES}), requires_approval=True),
        Tool("ls", "List a directory in the workspace", LsInput, ls_tool,
             capabilities=frozenset({READ_FILES})),
        Tool("glob", "Find workspace files matching a glob pattern", GlobInput, glob_tool,
             capabilities=frozenset({READ_FILES})),
        Tool("grep", "Search workspace files for a regular expression", GrepInput, grep_tool,
             capabilities=frozenset({READ_FILES})),
        Tool("bash", "Execute a shell command in the workspace directory", BashInput, bash_tool,
             capabilities=frozenset({EXECUTE_SHELL}), requires_approval=True),
    ]


def register_builtin_tools(registry: ToolRegistry) -> None:
    for tool in builtin_tools():
        registry.register(tool)
    logger.info("Registered %d built-in tools", len(builtin_tools()))
