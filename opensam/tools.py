"""Built-in tools: file access, directory listing, shell exec and messaging."""

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable

from .bus import OutboundMessage
from .errors import OutsideWorkspaceError, ToolExecutionError
from .paths import validate_workspace_path
from .registry import Tool, ToolContext, ToolRegistry, optional_str, require_str

MAX_EXEC_OUTPUT = 10_000  # bytes returned inline by exec
DEFAULT_EXEC_TIMEOUT = 60
MAX_EXEC_TIMEOUT = 600
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for a killed process to exit

READ_FILE_SCHEMA = {
    "type": "object",
    "properties": {
        "path": {
            "type": "string",
            "description": "Path to the file, relative to the workspace.",
        },
    },
    "required": ["path"],
}

WRITE_FILE_SCHEMA = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Path to the file to write."},
        "content": {"type": "string", "description": "The content to write."},
    },
    "required": ["path", "content"],
}

EDIT_FILE_SCHEMA = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Path to the file to edit."},
        "old_text": {
            "type": "string",
            "description": "The exact text to replace. Must occur exactly once.",
        },
        "new_text": {"type": "string", "description": "The replacement text."},
    },
    "required": ["path", "old_text", "new_text"],
}

LIST_DIR_SCHEMA = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Directory to list."},
    },
    "required": ["path"],
}

EXEC_SCHEMA = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "Shell command to run."},
        "working_dir": {
            "type": "string",
            "description": "Working directory inside the workspace. Defaults to the workspace root.",
        },
        "timeout": {
            "type": "integer",
            "description": f"Timeout in seconds (1-{MAX_EXEC_TIMEOUT}).",
            "minimum": 1,
            "maximum": MAX_EXEC_TIMEOUT,
        },
    },
    "required": ["command"],
}

MESSAGE_SCHEMA = {
    "type": "object",
    "properties": {
        "content": {"type": "string", "description": "Message content."},
        "channel": {
            "type": "string",
            "description": "Target channel (defaults to the current one).",
        },
        "chat_id": {
            "type": "string",
            "description": "Target chat ID (defaults to the current one).",
        },
    },
    "required": ["content"],
}


# -- File tools --------------------------------------------------------------


def _read_file(path: str, workspace: str | Path) -> str:
    """Return file contents, or an ``error:`` sentinel."""
    try:
        resolved = validate_workspace_path(path, workspace)
    except OutsideWorkspaceError as exc:
        return f"error: {exc}"

    if not resolved.exists():
        return f"error: file does not exist: {path}"
    if not resolved.is_file():
        return f"error: not a file: {path}"
    try:
        return resolved.read_text(encoding="utf-8")
    except PermissionError:
        return f"error: permission denied: {path}"
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {path} as UTF-8: {exc}"


def _write_file(path: str, content: str, workspace: str | Path) -> str:
    """Create or overwrite a file, creating parent directories as needed."""
    try:
        resolved = validate_workspace_path(path, workspace)
    except OutsideWorkspaceError as exc:
        return f"error: {exc}"

    if resolved.is_dir():
        return f"error: path is a directory: {path}"
    data = content.encode("utf-8")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
    except PermissionError:
        return f"error: permission denied: {path}"
    return f"Wrote {len(data)} bytes to {path}"


def _edit_file(path: str, old_text: str, new_text: str, workspace: str | Path) -> str:
    """Replace the single occurrence of old_text with new_text."""
    try:
        resolved = validate_workspace_path(path, workspace)
    except OutsideWorkspaceError as exc:
        return f"error: {exc}"

    if not resolved.exists():
        return f"error: file does not exist: {path}"
    if not resolved.is_file():
        return f"error: not a file: {path}"
    if not old_text:
        return "error: old_text must not be empty"

    try:
        content = resolved.read_text(encoding="utf-8")
    except PermissionError:
        return f"error: permission denied: {path}"
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {path} as UTF-8: {exc}"

    count = content.count(old_text)
    if count == 0:
        return f"error: old_text not found in {path}"
    if count > 1:
        return f"error: old_text is ambiguous, {count} matches in {path}"

    try:
        resolved.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
    except PermissionError:
        return f"error: permission denied: {path}"
    return f"Edited {path}"


def _list_dir(path: str, workspace: str | Path) -> str:
    """Sorted listing with ``[DIR]`` / ``[FILE]`` prefixes."""
    try:
        resolved = validate_workspace_path(path, workspace)
    except OutsideWorkspaceError as exc:
        return f"error: {exc}"

    if not resolved.exists():
        return f"error: directory does not exist: {path}"
    if not resolved.is_dir():
        return f"error: path is a file, not a directory: {path}"

    try:
        items = [
            ("[DIR] " if child.is_dir() else "[FILE] ") + child.name
            for child in resolved.iterdir()
        ]
    except PermissionError:
        return f"error: permission denied: {path}"

    if not items:
        return f"Directory is empty: {path}"
    return "\n".join(sorted(items))


# -- Shell -------------------------------------------------------------------


async def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill a process and its process group, then wait for it to exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(proc.wait(), _KILL_WAIT_TIMEOUT)
    except asyncio.TimeoutError:
        pass  # unkillable; give up


def _format_exec_output(stdout: bytes, stderr: bytes, returncode: int | None) -> str:
    parts: list[str] = []
    if stdout:
        parts.append(stdout.decode("utf-8", errors="replace"))
    if stderr:
        parts.append("STDERR:\n" + stderr.decode("utf-8", errors="replace"))
    if returncode != 0:
        parts.append(f"Exit code: {returncode}")
    result = "\n".join(parts) if parts else "(no output)"

    encoded = result.encode("utf-8")
    if len(encoded) > MAX_EXEC_OUTPUT:
        remaining = len(encoded) - MAX_EXEC_OUTPUT
        head = encoded[:MAX_EXEC_OUTPUT].decode("utf-8", errors="ignore")
        result = f"{head}\n[output truncated, {remaining} more bytes]"
    return result


async def _exec(
    command: str,
    workspace: str | Path,
    working_dir: str | None = None,
    timeout: int = DEFAULT_EXEC_TIMEOUT,
) -> str:
    """Run *command* through the shell inside the workspace.

    Only the working directory is validated against the workspace; the
    command text itself can still name paths outside it.
    """
    if working_dir:
        try:
            cwd = validate_workspace_path(working_dir, workspace)
        except OutsideWorkspaceError as exc:
            return f"error: {exc}"
    else:
        cwd = Path(workspace)
    if not cwd.is_dir():
        return f"error: working directory does not exist: {working_dir or cwd}"

    timeout = max(1, min(int(timeout), MAX_EXEC_TIMEOUT))

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=sys.platform != "win32",
        )
    except OSError as exc:
        return f"error: failed to start command: {exc}"

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        await _kill_process_tree(proc)
        return f"error: command timed out after {timeout}s"

    return _format_exec_output(stdout, stderr, proc.returncode)


# -- Tool factories ----------------------------------------------------------


def read_file_tool(workspace: str | Path) -> Tool:
    async def handler(args: dict, ctx: ToolContext) -> str:
        return await asyncio.to_thread(
            _read_file, require_str("read_file", args, "path"), workspace
        )

    return Tool(
        "read_file",
        "Read the contents of a text file in the workspace.",
        READ_FILE_SCHEMA,
        handler,
    )


def write_file_tool(workspace: str | Path) -> Tool:
    async def handler(args: dict, ctx: ToolContext) -> str:
        return await asyncio.to_thread(
            _write_file,
            require_str("write_file", args, "path"),
            require_str("write_file", args, "content"),
            workspace,
        )

    return Tool(
        "write_file",
        "Create or overwrite a file. Parent directories are created as needed.",
        WRITE_FILE_SCHEMA,
        handler,
    )


def edit_file_tool(workspace: str | Path) -> Tool:
    async def handler(args: dict, ctx: ToolContext) -> str:
        return await asyncio.to_thread(
            _edit_file,
            require_str("edit_file", args, "path"),
            require_str("edit_file", args, "old_text"),
            require_str("edit_file", args, "new_text"),
            workspace,
        )

    return Tool(
        "edit_file",
        "Replace old_text with new_text in a file. old_text must match exactly once.",
        EDIT_FILE_SCHEMA,
        handler,
    )


def list_dir_tool(workspace: str | Path) -> Tool:
    async def handler(args: dict, ctx: ToolContext) -> str:
        return await asyncio.to_thread(
            _list_dir, require_str("list_dir", args, "path"), workspace
        )

    return Tool(
        "list_dir",
        "List the contents of a directory.",
        LIST_DIR_SCHEMA,
        handler,
    )


def exec_tool(workspace: str | Path, timeout: int = DEFAULT_EXEC_TIMEOUT) -> Tool:
    async def handler(args: dict, ctx: ToolContext) -> str:
        per_call = args.get("timeout")
        if per_call is None:
            per_call = timeout
        if isinstance(per_call, bool) or not isinstance(per_call, (int, float)):
            raise ToolExecutionError("exec", "argument 'timeout' must be a number")
        return await _exec(
            require_str("exec", args, "command"),
            workspace,
            working_dir=optional_str("exec", args, "working_dir"),
            timeout=per_call,
        )

    return Tool(
        "exec",
        "Run a shell command in the workspace and return its output.",
        EXEC_SCHEMA,
        handler,
    )


SendCallback = Callable[[OutboundMessage], Awaitable[None]]


def message_tool(send: SendCallback) -> Tool:
    """Forward a message to a chat channel through *send*.

    Channel and chat id come from the arguments first, then from the
    invocation context.
    """

    async def handler(args: dict, ctx: ToolContext) -> str:
        content = require_str("message", args, "content")
        channel = optional_str("message", args, "channel") or ctx.channel
        chat_id = optional_str("message", args, "chat_id") or ctx.chat_id
        if not channel:
            raise ToolExecutionError("message", "no channel specified")
        if not chat_id:
            raise ToolExecutionError("message", "no chat_id specified")
        await send(OutboundMessage(channel=channel, chat_id=chat_id, content=content))
        return f"Message sent to {channel}:{chat_id}"

    return Tool(
        "message",
        "Send a message to a chat channel. For a normal reply, answer with text instead.",
        MESSAGE_SCHEMA,
        handler,
    )


def build_default_registry(
    workspace: str | Path,
    send: SendCallback,
    *,
    exec_timeout: int = DEFAULT_EXEC_TIMEOUT,
    brave_api_key: str | None = None,
    web_search_max_results: int = 5,
) -> ToolRegistry:
    """Register every built-in tool against *workspace*."""
    from .web import web_fetch_tool, web_search_tool

    registry = ToolRegistry()
    registry.register(read_file_tool(workspace))
    registry.register(write_file_tool(workspace))
    registry.register(edit_file_tool(workspace))
    registry.register(list_dir_tool(workspace))
    registry.register(exec_tool(workspace, timeout=exec_timeout))
    registry.register(
        web_search_tool(api_key=brave_api_key, max_results=web_search_max_results)
    )
    registry.register(web_fetch_tool())
    registry.register(message_tool(send))
    return registry
