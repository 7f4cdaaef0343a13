"""opensam: a tool-calling assistant with a sandboxed workspace."""

from .agent import AgentLoop, session_key
from .bus import InboundMessage, MessageBus, OutboundMessage
from .errors import AgentError, OutsideWorkspaceError, ToolError
from .paths import validate_workspace_path
from .registry import Tool, ToolContext, ToolRegistry
from .session import Session, SessionManager

__all__ = [
    "AgentError",
    "AgentLoop",
    "InboundMessage",
    "MessageBus",
    "OutboundMessage",
    "OutsideWorkspaceError",
    "Session",
    "SessionManager",
    "Tool",
    "ToolContext",
    "ToolError",
    "ToolRegistry",
    "session_key",
    "validate_workspace_path",
]
