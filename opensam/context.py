"""System prompt and model-facing message list assembly."""

import json
import logging
from datetime import datetime
from pathlib import Path

from .provider import ToolCall

logger = logging.getLogger(__name__)

BOOTSTRAP_FILES = ("DIRECTIVE.md", "PERSONA.md", "SUBJECT.md")
MEMORY_FILE = Path("lifepod") / "MEMORY.md"
SECTION_SEPARATOR = "\n\n---\n\n"

IDENTITY_TEMPLATE = """\
# opensam

You are opensam, a helpful AI assistant. You have tools to:
- Read, write, and edit files
- Execute shell commands
- Search the web and fetch web pages
- Send messages to users on chat channels

## Current Time
{now}

## Workspace
Your workspace is at: {workspace}
- Memory file: {memory}

When answering a direct question or conversation, reply with plain text.
Only use the 'message' tool to send something to a specific chat channel.

Be helpful, accurate, and concise. When using tools, say what you are doing.
When remembering something, write it to {memory}"""


class ContextBuilder:
    def __init__(self, workspace: str | Path):
        self.workspace = Path(workspace)

    @property
    def memory_path(self) -> Path:
        return self.workspace / MEMORY_FILE

    def identity(self) -> str:
        now = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M (%A)")
        return IDENTITY_TEMPLATE.format(
            now=now, workspace=self.workspace, memory=self.memory_path
        )

    def _read_optional(self, path: Path) -> str | None:
        """File contents, or None when missing or unreadable."""
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read %s: %s", path, e)
            return None

    def load_bootstrap_files(self) -> str:
        parts = []
        for name in BOOTSTRAP_FILES:
            content = self._read_optional(self.workspace / name)
            if content is not None:
                parts.append(f"## {name}\n\n{content}")
        return "\n\n".join(parts)

    def load_memory(self) -> str:
        return self._read_optional(self.memory_path) or ""

    def build_system_prompt(self) -> str:
        parts = [self.identity()]
        bootstrap = self.load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)
        memory = self.load_memory()
        if memory.strip():
            parts.append(f"# Memory\n\n{memory}")
        return SECTION_SEPARATOR.join(parts)

    def build_messages(self, history: list[dict], current_message: str) -> list[dict]:
        """``[system] + history + [user]``."""
        return [
            {"role": "system", "content": self.build_system_prompt()},
            *history,
            {"role": "user", "content": current_message},
        ]

    @staticmethod
    def add_tool_result(
        messages: list[dict], tool_call_id: str, name: str, result: str
    ) -> None:
        messages.append(
            {"role": "tool", "tool_call_id": tool_call_id, "name": name, "content": result}
        )

    @staticmethod
    def add_assistant_message(
        messages: list[dict],
        content: str | None,
        tool_calls: list[ToolCall] | None = None,
    ) -> None:
        msg: dict = {"role": "assistant", "content": content or ""}
        if tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": tc.arguments
                        if isinstance(tc.arguments, str)
                        else json.dumps(tc.arguments),
                    },
                }
                for tc in tool_calls
            ]
        messages.append(msg)
