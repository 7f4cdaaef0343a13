"""Model collaborator contract and the LiteLLM adapter."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import (
    ApiRejectedError,
    MalformedResponseError,
    NoCredentialsError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is the decoded JSON object, or the raw string when the
    model sent something that does not parse.
    """

    id: str
    name: str
    arguments: dict | str

    @property
    def arguments_valid(self) -> bool:
        return isinstance(self.arguments, dict)


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatResponse:
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class LLMProvider(Protocol):
    async def chat(
        self,
        *,
        model: str,
        messages: list[dict],
        tools: list[dict] | None = None,
        tool_choice: str = "auto",
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> ChatResponse: ...


def parse_arguments(raw: Any) -> dict | str:
    """Decode tool-call arguments. Empty input means no arguments."""
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw if isinstance(raw, str) else str(raw)
    if not isinstance(decoded, dict):
        return raw
    return decoded


def _parse_tool_calls(raw_calls) -> list[ToolCall]:
    calls = []
    for tc in raw_calls or []:
        function = getattr(tc, "function", None)
        name = getattr(function, "name", None)
        if not name:
            raise MalformedResponseError("tool call without a function name")
        calls.append(
            ToolCall(
                id=getattr(tc, "id", None) or f"call_{len(calls)}",
                name=name,
                arguments=parse_arguments(getattr(function, "arguments", None)),
            )
        )
    return calls


def parse_response(response) -> ChatResponse:
    """Convert a LiteLLM ``ModelResponse`` into a ChatResponse."""
    choices = getattr(response, "choices", None)
    if not choices:
        raise MalformedResponseError("response has no choices")
    choice = choices[0]
    message = getattr(choice, "message", None)
    if message is None:
        raise MalformedResponseError("response choice has no message")

    usage = Usage()
    raw_usage = getattr(response, "usage", None)
    if raw_usage is not None:
        usage = Usage(
            prompt_tokens=getattr(raw_usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(raw_usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(raw_usage, "total_tokens", 0) or 0,
        )

    return ChatResponse(
        content=getattr(message, "content", None),
        tool_calls=_parse_tool_calls(getattr(message, "tool_calls", None)),
        finish_reason=getattr(choice, "finish_reason", None),
        usage=usage,
    )


class LiteLLMProvider:
    """LLMProvider backed by ``litellm.acompletion``. No retries."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self.api_key = api_key
        self.base_url = base_url

    async def chat(
        self,
        *,
        model: str,
        messages: list[dict],
        tools: list[dict] | None = None,
        tool_choice: str = "auto",
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> ChatResponse:
        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = tool_choice
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url

        logger.debug("Calling %s with %d messages", model, len(messages))
        try:
            response = await litellm.acompletion(**kwargs)
        except litellm.RateLimitError as e:
            raise RateLimitedError(f"rate limited: {e}") from e
        except litellm.AuthenticationError as e:
            raise NoCredentialsError(f"authentication failed: {e}") from e
        except Exception as e:
            raise ApiRejectedError(f"LLM call failed: {e}") from e

        return parse_response(response)
