"""Tests for the LiteLLM-backed provider and response parsing."""

import asyncio
import types
from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from opensam.errors import (
    ApiRejectedError,
    MalformedResponseError,
    NoCredentialsError,
    RateLimitedError,
)
from opensam.provider import LiteLLMProvider, parse_arguments, parse_response


def _tool_call(name, arguments, call_id="call_1"):
    tc = types.SimpleNamespace()
    tc.id = call_id
    tc.function = types.SimpleNamespace(name=name, arguments=arguments)
    return tc


def _mock_response(content="ok", tool_calls=None, finish_reason="stop"):
    choice = MagicMock()
    choice.message = MagicMock(content=content, tool_calls=tool_calls)
    choice.finish_reason = finish_reason
    resp = MagicMock()
    resp.choices = [choice]
    resp.usage = types.SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    return resp


def _chat(provider, **kwargs):
    kwargs.setdefault("model", "openai/gpt-4o-mini")
    kwargs.setdefault("messages", [{"role": "user", "content": "hi"}])
    return asyncio.run(provider.chat(**kwargs))


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


class TestParseResponse:
    def test_text_response(self):
        parsed = parse_response(_mock_response("hello"))
        assert parsed.content == "hello"
        assert parsed.tool_calls == []
        assert not parsed.has_tool_calls
        assert parsed.finish_reason == "stop"
        assert parsed.usage.total_tokens == 15

    def test_tool_calls_decoded_in_order(self):
        calls = [
            _tool_call("read_file", '{"path": "a.txt"}', "c1"),
            _tool_call("list_dir", '{"path": "."}', "c2"),
        ]
        parsed = parse_response(_mock_response(None, calls, "tool_calls"))
        assert [(c.id, c.name, c.arguments) for c in parsed.tool_calls] == [
            ("c1", "read_file", {"path": "a.txt"}),
            ("c2", "list_dir", {"path": "."}),
        ]

    def test_invalid_json_kept_raw(self):
        parsed = parse_response(_mock_response(None, [_tool_call("exec", "{oops")]))
        call = parsed.tool_calls[0]
        assert call.arguments == "{oops"
        assert not call.arguments_valid

    def test_no_choices(self):
        resp = MagicMock()
        resp.choices = []
        with pytest.raises(MalformedResponseError):
            parse_response(resp)

    def test_tool_call_without_name(self):
        with pytest.raises(MalformedResponseError):
            parse_response(_mock_response(None, [_tool_call("", "{}")]))


class TestParseArguments:
    def test_empty_means_no_arguments(self):
        assert parse_arguments("") == {}
        assert parse_arguments(None) == {}

    def test_dict_passes_through(self):
        assert parse_arguments({"a": 1}) == {"a": 1}

    def test_non_object_json_kept_raw(self):
        assert parse_arguments("[1, 2]") == "[1, 2]"


# ---------------------------------------------------------------------------
# LiteLLM call
# ---------------------------------------------------------------------------


class TestLiteLLMProvider:
    def test_forwards_parameters(self):
        tools = [{"type": "function", "function": {"name": "x", "parameters": {}}}]
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _mock_response()
            result = _chat(
                LiteLLMProvider(api_key="sk-test", base_url="http://localhost:4000"),
                tools=tools,
                max_tokens=256,
                temperature=0.2,
            )

        assert result.content == "ok"
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/gpt-4o-mini"
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["max_tokens"] == 256
        assert kwargs["temperature"] == 0.2
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["api_base"] == "http://localhost:4000"

    def test_no_tools_omits_tool_choice(self):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _mock_response()
            _chat(LiteLLMProvider())
        kwargs = mock_comp.call_args[1]
        assert "tools" not in kwargs
        assert "tool_choice" not in kwargs
        assert "api_key" not in kwargs

    def test_rate_limit_mapped(self):
        err = litellm.RateLimitError(message="slow down", llm_provider="openai", model="m")
        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=err):
            with pytest.raises(RateLimitedError):
                _chat(LiteLLMProvider())

    def test_auth_error_mapped(self):
        err = litellm.AuthenticationError(message="bad key", llm_provider="openai", model="m")
        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=err):
            with pytest.raises(NoCredentialsError):
                _chat(LiteLLMProvider())

    def test_other_errors_mapped(self):
        with patch(
            "litellm.acompletion", new_callable=AsyncMock, side_effect=RuntimeError("boom")
        ):
            with pytest.raises(ApiRejectedError, match="boom"):
                _chat(LiteLLMProvider())
