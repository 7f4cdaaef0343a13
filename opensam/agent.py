"""Agent loop: one inbound message in, bounded model/tool iterations, one reply out."""

import asyncio
import json
import logging
import time
from pathlib import Path

from . import fmt
from .bus import InboundMessage, MessageBus, OutboundMessage
from .context import ContextBuilder
from .errors import AgentError, MaxIterationsError, ToolError
from .provider import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    LLMProvider,
    ToolCall,
)
from .registry import ToolContext, ToolRegistry
from .session import DEFAULT_MAX_MESSAGES, SessionManager
from .tools import DEFAULT_EXEC_TIMEOUT, build_default_registry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_HISTORY_MESSAGES = 20
FALLBACK_RESPONSE = "Task completed."
_PREVIEW_CHARS = 200

_encoder = None


def estimate_tokens(messages: list[dict], tools: list[dict] | None = None) -> int:
    """Rough token count with tiktoken's cl100k_base encoding."""
    global _encoder
    if _encoder is None:
        import tiktoken

        _encoder = tiktoken.get_encoding("cl100k_base")

    total = 0
    for m in messages:
        content = m.get("content") or ""
        if m.get("tool_calls"):
            content += json.dumps(m["tool_calls"])
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # ~4 tokens of per-message overhead
    return total + 4 * len(messages)


def session_key(channel: str, chat_id: str) -> str:
    return f"{channel}:{chat_id}"


def _preview(text: str) -> str:
    first = text.strip().splitlines()[0] if text.strip() else ""
    return first if len(first) <= _PREVIEW_CHARS else first[:_PREVIEW_CHARS] + "..."


class AgentLoop:
    """Turns inbound messages into replies by driving the model and the tools.

    Only the user text and the final reply of each round trip are
    persisted to the session; intermediate tool traffic is not.
    """

    def __init__(
        self,
        provider: LLMProvider,
        workspace: str | Path,
        *,
        model: str,
        bus: MessageBus | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        history_messages: int = DEFAULT_HISTORY_MESSAGES,
        session_manager: SessionManager | None = None,
        sessions_dir: str | Path | None = None,
        session_max_messages: int = DEFAULT_MAX_MESSAGES,
        tools: ToolRegistry | None = None,
        brave_api_key: str | None = None,
        web_search_max_results: int = 5,
        exec_timeout: int = DEFAULT_EXEC_TIMEOUT,
        verbose: bool = False,
    ):
        self.provider = provider
        self.workspace = Path(workspace)
        self.model = model
        self.bus = bus or MessageBus()
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.history_messages = history_messages
        self.verbose = verbose

        if session_manager is None:
            sessions_dir = sessions_dir or self.workspace / ".opensam" / "sessions"
            session_manager = SessionManager(sessions_dir, session_max_messages)
        self.sessions = session_manager
        self.context = ContextBuilder(self.workspace)
        if tools is None:
            tools = build_default_registry(
                self.workspace,
                self.bus.publish_outbound,
                exec_timeout=exec_timeout,
                brave_api_key=brave_api_key,
                web_search_max_results=web_search_max_results,
            )
        self.tools = tools
        self._running = False

    # -- Public entry points -------------------------------------------------

    async def process_message(self, msg: InboundMessage) -> OutboundMessage:
        """Handle one message. Always returns a reply; failures start with ``Error: ``."""
        key = session_key(msg.channel, msg.chat_id)
        logger.info("Processing message from %s:%s", msg.channel, msg.sender_id)

        async with self.sessions.lock:
            history = self.sessions.get_or_create(key).get_history(self.history_messages)

        messages = self.context.build_messages(history, msg.content)
        tool_ctx = ToolContext(channel=msg.channel, chat_id=msg.chat_id)

        try:
            final = await self._run(messages, tool_ctx)
        except AgentError as e:
            logger.error("Invocation for %s failed: %s", key, e)
            if self.verbose:
                fmt.error(str(e))
            final = f"Error: {e}"
        except Exception as e:
            logger.exception("Unexpected failure processing %s", key)
            if self.verbose:
                fmt.error(str(e))
            final = f"Error: {e}"

        async with self.sessions.lock:
            session = self.sessions.get_or_create(key)
            session.add_message("user", msg.content)
            session.add_message("assistant", final)
            try:
                self.sessions.save(session)
            except OSError as e:
                logger.warning("Failed to save session %s: %s", key, e)
                if self.verbose:
                    fmt.warning(f"failed to save session {key}: {e}")

        return OutboundMessage(channel=msg.channel, chat_id=msg.chat_id, content=final)

    async def process_direct(self, content: str, session_key: str = "cli:direct") -> str:
        """Run one message for a ``channel:chat_id`` key and return the reply text."""
        channel, sep, chat_id = session_key.partition(":")
        if not sep:
            channel, chat_id = "cli", session_key
        msg = InboundMessage(channel=channel, sender_id="user", chat_id=chat_id, content=content)
        response = await self.process_message(msg)
        return response.content

    async def run(self) -> None:
        """Consume inbound messages from the bus until stop() is called."""
        self._running = True
        logger.info("Agent loop started")
        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            response = await self.process_message(msg)
            await self.bus.publish_outbound(response)

    def stop(self) -> None:
        self._running = False
        logger.info("Agent loop stopping")

    # -- Iterations ----------------------------------------------------------

    async def _run(self, messages: list[dict], tool_ctx: ToolContext) -> str:
        definitions = self.tools.definitions()
        iteration = 0
        while True:
            iteration += 1
            if iteration > self.max_iterations:
                if self.verbose:
                    fmt.completion(iteration - 1, "max iterations")
                raise MaxIterationsError(self.max_iterations)

            if self.verbose:
                fmt.turn_header(
                    iteration, self.max_iterations, estimate_tokens(messages, definitions)
                )
            t0 = time.monotonic()
            response = await self.provider.chat(
                model=self.model,
                messages=messages,
                tools=definitions,
                tool_choice="auto",
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
            if self.verbose:
                fmt.llm_timing(time.monotonic() - t0, response.finish_reason)

            if not response.has_tool_calls:
                if self.verbose:
                    fmt.completion(iteration, "ok")
                return response.content or FALLBACK_RESPONSE

            if self.verbose and response.content:
                fmt.assistant_text(response.content)
            ContextBuilder.add_assistant_message(
                messages, response.content, response.tool_calls
            )
            for call in response.tool_calls:
                result = await self._execute_tool(call, tool_ctx)
                ContextBuilder.add_tool_result(messages, call.id, call.name, result)

    async def _execute_tool(self, call: ToolCall, tool_ctx: ToolContext) -> str:
        if not call.arguments_valid:
            if self.verbose:
                fmt.tool_error(call.name, "invalid JSON in arguments")
            return f"error: invalid JSON in tool arguments: {str(call.arguments)[:_PREVIEW_CHARS]}"

        if self.verbose:
            fmt.tool_call(call.name, json.dumps(call.arguments, indent=2))
        t0 = time.monotonic()
        try:
            result = await self.tools.execute(call.name, call.arguments, tool_ctx)
        except ToolError as e:
            logger.debug("Tool %s failed: %s", call.name, e)
            if self.verbose:
                fmt.tool_error(call.name, str(e))
            return f"Error: {e}"

        if self.verbose:
            if result.startswith("error:"):
                fmt.tool_error(call.name, result)
            else:
                fmt.tool_result(call.name, time.monotonic() - t0, _preview(result))
        return result
