"""Tool record and name-keyed dispatch table."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .errors import ToolError, ToolExecutionError, ToolNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """Per-invocation routing info, passed explicitly to every handler."""

    channel: str | None = None
    chat_id: str | None = None


Handler = Callable[[dict, ToolContext], Awaitable[str]]


@dataclass
class Tool:
    """A capability set: name, description, JSON schema and an async handler."""

    name: str
    description: str
    parameters: dict
    handler: Handler = field(repr=False)

    def definition(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def execute(self, args: dict, context: ToolContext | None = None) -> str:
        return await self.handler(args, context or ToolContext())


def require_str(tool: str, args: dict, key: str) -> str:
    """Fetch a required string argument or raise ToolExecutionError."""
    value = args.get(key)
    if not isinstance(value, str):
        if value is None:
            raise ToolExecutionError(tool, f"missing required argument {key!r}")
        raise ToolExecutionError(
            tool, f"argument {key!r} must be a string, got {type(value).__name__}"
        )
    return value


def optional_str(tool: str, args: dict, key: str) -> str | None:
    value = args.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ToolExecutionError(
        tool, f"argument {key!r} must be a string, got {type(value).__name__}"
    )


class ToolRegistry:
    """Name-keyed map of tools. The last registration for a name wins."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.debug("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict]:
        """Tool definitions in the shape the model collaborator expects."""
        return [tool.definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def execute(
        self, name: str, args: Any, context: ToolContext | None = None
    ) -> str:
        """Run a tool by name.

        Raises:
            ToolNotFoundError: if no tool is registered under *name*.
            ToolExecutionError: for malformed arguments or any other
                exception raised inside the tool.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        if not isinstance(args, dict):
            raise ToolExecutionError(
                name, f"arguments must be an object, got {type(args).__name__}"
            )

        logger.debug("Executing tool %s", name)
        try:
            return await tool.execute(args, context)
        except ToolError:
            raise
        except Exception as exc:
            logger.debug("Tool %s raised %s", name, type(exc).__name__, exc_info=True)
            raise ToolExecutionError(name, exc) from exc
