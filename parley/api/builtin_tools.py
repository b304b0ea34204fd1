"""Built-in local tools: read_file, write_file, edit_file, bash, glob, grep.

Relative paths resolve against the working directory given at
registration.  Handlers return MCP-format responses and raise ToolError
for failures the model should see.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any

from parley.api.tools import ToolDispatcher, ToolError, mcp_response

logger = logging.getLogger(__name__)

# Limits
_MAX_OUTPUT_CHARS = 100_000
_MAX_LINE_CHARS = 2_000
_DEFAULT_BASH_TIMEOUT = 120  # seconds
_MAX_BASH_TIMEOUT = 600
_MAX_GLOB_RESULTS = 500
_MAX_GREP_LINES = 200


def _truncate_output(text: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n[Output truncated at {_MAX_OUTPUT_CHARS} chars]"
    return text


def resolve_path(path: str, working_directory: Path) -> Path:
    """Absolute and ~ paths are used as given; others are relative to the working directory."""
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate
    return working_directory / candidate


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file_tool(
    file_path: str,
    offset: int = 1,
    limit: int = 0,
    *,
    _working_directory: Path,
) -> dict[str, Any]:
    """Read a file with line numbers.  ``offset`` is 1-based; ``limit`` 0 reads to the end."""
    target = resolve_path(file_path, _working_directory)
    if not target.exists():
        raise ToolError(f"File not found: {target}")
    if not target.is_file():
        raise ToolError(f"Not a file: {target}")

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    lines = content.splitlines()
    start = max(offset, 1) - 1
    selected = lines[start:start + limit] if limit > 0 else lines[start:]

    output_lines = []
    for number, line in enumerate(selected, start=start + 1):
        if len(line) > _MAX_LINE_CHARS:
            line = line[:_MAX_LINE_CHARS] + "..."
        output_lines.append(f"{number:6d}\t{line}")
    output = "\n".join(output_lines)
    return mcp_response(_truncate_output(output) if output else "(empty file)")


async def write_file_tool(
    file_path: str,
    content: str,
    *,
    _working_directory: Path,
) -> dict[str, Any]:
    target = resolve_path(file_path, _working_directory)
    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return mcp_response(f"File written successfully: {target}\nSize: {len(content):,} chars")


async def edit_file_tool(
    file_path: str,
    old_string: str,
    new_string: str,
    *,
    _working_directory: Path,
) -> dict[str, Any]:
    """Replace exactly one occurrence of ``old_string``."""
    target = resolve_path(file_path, _working_directory)
    if not target.is_file():
        raise ToolError(f"File not found: {target}")

    content = await asyncio.to_thread(target.read_text, encoding="utf-8")
    count = content.count(old_string)
    if count == 0:
        raise ToolError(
            f"old_string not found in {target}. Make sure it matches exactly, including whitespace."
        )
    if count > 1:
        raise ToolError(
            f"old_string matches {count} locations in {target}. Include more context to make it unique."
        )
    await asyncio.to_thread(target.write_text, content.replace(old_string, new_string, 1), encoding="utf-8")
    return mcp_response(f"Edited {target}")


async def bash_tool(
    command: str,
    timeout: int = _DEFAULT_BASH_TIMEOUT,
    *,
    _working_directory: Path,
) -> dict[str, Any]:
    """Run a shell command in the working directory and return stdout + stderr."""
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(_working_directory),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise ToolError(f"Command timed out after {effective_timeout}s.\nCommand: {command}") from None

    parts = []
    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    output = _truncate_output("\n".join(parts) if parts else "(no output)")
    if proc.returncode != 0:
        raise ToolError(f"{output}\nExit code: {proc.returncode}")
    return mcp_response(output)


async def glob_tool(
    pattern: str,
    path: str | None = None,
    *,
    _working_directory: Path,
) -> dict[str, Any]:
    """Files matching a glob pattern, most recently modified first."""
    base = resolve_path(path, _working_directory) if path else _working_directory

    def _search() -> list[Path]:
        matches = [p for p in base.glob(pattern) if p.is_file()]
        matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return matches[:_MAX_GLOB_RESULTS]

    matches = await asyncio.to_thread(_search)
    if not matches:
        return mcp_response(f"No files found matching '{pattern}' in {base}")
    return mcp_response("\n".join(str(p) for p in matches))


async def grep_tool(
    pattern: str,
    path: str | None = None,
    include: str | None = None,
    *,
    _working_directory: Path,
) -> dict[str, Any]:
    """Regex search over file contents; returns ``path:line:text`` matches."""
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ToolError(f"Invalid regex '{pattern}': {e}") from None
    base = resolve_path(path, _working_directory) if path else _working_directory

    def _search() -> list[str]:
        files = [base] if base.is_file() else sorted(base.rglob(include or "*"))
        results: list[str] = []
        for file in files:
            if not file.is_file():
                continue
            try:
                text = file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    results.append(f"{file}:{number}:{line}")
                    if len(results) >= _MAX_GREP_LINES:
                        return results
        return results

    results = await asyncio.to_thread(_search)
    if not results:
        return mcp_response(f"No matches found for '{pattern}' in {base}")
    return mcp_response(_truncate_output("\n".join(results)))


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Read a file from the local filesystem. Returns file contents with line numbers. "
        "For large files, use offset and limit to read specific sections."
    ),
    "properties": {
        "file_path": {"type": "string", "description": "Path to the file to read"},
        "offset": {"type": "integer", "description": "Line number to start reading from (1-based)"},
        "limit": {"type": "integer", "description": "Maximum number of lines to read"},
    },
    "required": ["file_path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Write content to a file. Creates parent directories as needed and "
        "overwrites existing content."
    ),
    "properties": {
        "file_path": {"type": "string", "description": "Path to the file to write"},
        "content": {"type": "string", "description": "The full content to write to the file"},
    },
    "required": ["file_path", "content"],
}

_EDIT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Replace an exact string in a file. old_string must match exactly one "
        "location, including whitespace and indentation."
    ),
    "properties": {
        "file_path": {"type": "string", "description": "Path to the file to edit"},
        "old_string": {"type": "string", "description": "The exact string to find"},
        "new_string": {"type": "string", "description": "The replacement string"},
    },
    "required": ["file_path", "old_string", "new_string"],
}

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Execute a shell command in the working directory and return stdout and stderr. "
        "Timeout defaults to 120 seconds, max 600."
    ),
    "properties": {
        "command": {"type": "string", "description": "The shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds",
            "default": _DEFAULT_BASH_TIMEOUT,
            "minimum": 1,
            "maximum": _MAX_BASH_TIMEOUT,
        },
    },
    "required": ["command"],
}

_GLOB_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Find files matching a glob pattern such as '**/*.py', newest first.",
    "properties": {
        "pattern": {"type": "string", "description": "Glob pattern to match files against"},
        "path": {"type": "string", "description": "Directory to search. Defaults to working directory."},
    },
    "required": ["pattern"],
}

_GREP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search file contents with a regular expression. Returns path:line:text matches.",
    "properties": {
        "pattern": {"type": "string", "description": "Regex pattern to search for"},
        "path": {"type": "string", "description": "File or directory to search. Defaults to working directory."},
        "include": {"type": "string", "description": "Glob to filter files (e.g. '*.py')"},
    },
    "required": ["pattern"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, working_directory: str) -> None:
    """Register the local file and shell tools bound to ``working_directory``."""
    cwd = Path(working_directory).expanduser()

    async def _read_file(file_path: str, offset: int = 1, limit: int = 0) -> dict[str, Any]:
        return await read_file_tool(file_path, offset, limit, _working_directory=cwd)

    async def _write_file(file_path: str, content: str) -> dict[str, Any]:
        return await write_file_tool(file_path, content, _working_directory=cwd)

    async def _edit_file(file_path: str, old_string: str, new_string: str) -> dict[str, Any]:
        return await edit_file_tool(file_path, old_string, new_string, _working_directory=cwd)

    async def _bash(command: str, timeout: int = _DEFAULT_BASH_TIMEOUT) -> dict[str, Any]:
        return await bash_tool(command, timeout, _working_directory=cwd)

    async def _glob(pattern: str, path: str | None = None) -> dict[str, Any]:
        return await glob_tool(pattern, path, _working_directory=cwd)

    async def _grep(pattern: str, path: str | None = None, include: str | None = None) -> dict[str, Any]:
        return await grep_tool(pattern, path, include, _working_directory=cwd)

    dispatcher.register("read_file", _read_file, _READ_FILE_SCHEMA)
    dispatcher.register("write_file", _write_file, _WRITE_FILE_SCHEMA)
    dispatcher.register("edit_file", _edit_file, _EDIT_FILE_SCHEMA)
    dispatcher.register("bash", _bash, _BASH_SCHEMA)
    dispatcher.register("glob", _glob, _GLOB_SCHEMA)
    dispatcher.register("grep", _grep, _GREP_SCHEMA)
    logger.info("Registered %d built-in tools (cwd=%s)", len(dispatcher.tool_names), cwd)
