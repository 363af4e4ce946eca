"""Tests for message rendering and the LiteLLM-backed chat client."""

import json
import types

import pytest
from unittest.mock import MagicMock, patch

from yaocc.config import ModelConfig, ProviderConfig
from yaocc.errors import LLMError
from yaocc.llm import LLMClient, Message, ToolCall, ToolDescriptor


def _mock_response(content="ok", tool_calls=None):
    choice = MagicMock()
    choice.message = MagicMock(content=content, tool_calls=tool_calls)
    resp = MagicMock()
    resp.choices = [choice]
    return resp


def _raw_call(call_id, name, arguments):
    tc = types.SimpleNamespace()
    tc.id = call_id
    tc.function = types.SimpleNamespace(name=name, arguments=arguments)
    return tc


def _client(**model_kw):
    provider = ProviderConfig(
        name="local", base_url="http://127.0.0.1:1234/v1", api_key="sk-x", timeout_ms=5000
    )
    return LLMClient(provider, ModelConfig(id="m", model="qwen", **model_kw))


# ---------------------------------------------------------------------------
# Message rendering
# ---------------------------------------------------------------------------


class TestToApi:
    def test_plain_message(self):
        assert Message(role="user", content="hi").to_api() == {"role": "user", "content": "hi"}

    def test_assistant_with_tool_calls(self):
        msg = Message(
            role="assistant",
            content="",
            tool_calls=[ToolCall(id="c1", name="yaocc_cron_list", arguments="{}")],
        )
        api = msg.to_api()
        assert api["tool_calls"] == [
            {
                "id": "c1",
                "type": "function",
                "function": {"name": "yaocc_cron_list", "arguments": "{}"},
            }
        ]

    def test_tool_result(self):
        msg = Message(role="tool", content="out", tool_call_id="c1", name="yaocc_cron_list")
        assert msg.to_api() == {
            "role": "tool",
            "content": "out",
            "tool_call_id": "c1",
            "name": "yaocc_cron_list",
        }

    def test_uncorrelated_tool_output_sent_as_user(self):
        msg = Message(role="tool", content="Command: yaocc x\nOutput:\n")
        assert msg.to_api() == {"role": "user", "content": "Command: yaocc x\nOutput:\n"}

    def test_descriptor(self):
        desc = ToolDescriptor(name="t", description="d")
        assert desc.to_api() == {
            "type": "function",
            "function": {
                "name": "t",
                "description": "d",
                "parameters": {"type": "object", "properties": {}},
            },
        }


# ---------------------------------------------------------------------------
# chat()
# ---------------------------------------------------------------------------


class TestChat:
    def test_routing_and_options(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response("hello")
            text, calls = _client(max_tokens=256).chat(
                [Message(role="user", content="hi")],
                [ToolDescriptor(name="t", description="d")],
            )
        assert (text, calls) == ("hello", [])
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/qwen"
        assert kwargs["api_base"] == "http://127.0.0.1:1234/v1"
        assert kwargs["api_key"] == "sk-x"
        assert kwargs["max_tokens"] == 256
        assert kwargs["timeout"] == 5.0
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["tools"][0]["function"]["name"] == "t"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]

    def test_no_tools_no_tool_choice(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            _client().chat([Message(role="user", content="hi")], None)
        kwargs = mock_comp.call_args[1]
        assert "tools" not in kwargs
        assert "tool_choice" not in kwargs
        assert "max_tokens" not in kwargs

    def test_model_timeout_overrides_provider(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            _client(timeout_ms=1500).chat([], None)
        assert mock_comp.call_args[1]["timeout"] == 1.5

    def test_reasoning_effort(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            _client(reasoning="high").chat([], None)
        assert mock_comp.call_args[1]["reasoning_effort"] == "high"

    def test_reasoning_flag(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            _client(reasoning=True).chat([], None)
            assert mock_comp.call_args[1]["reasoning_effort"] == "medium"
            _client(reasoning=False).chat([], None)
            assert "reasoning_effort" not in mock_comp.call_args[1]

    def test_tool_calls_extracted(self):
        raw = [
            _raw_call("a", "yaocc_file_read", '{"path": "x"}'),
            _raw_call(None, "yaocc_cron_list", {"k": 1}),
        ]
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response(None, raw)
            text, calls = _client().chat([], None)
        assert text == ""
        assert calls[0] == ToolCall(id="a", name="yaocc_file_read", arguments='{"path": "x"}')
        assert calls[1].id == "call_1"
        assert json.loads(calls[1].arguments) == {"k": 1}

    def test_backend_failure_is_llm_error(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = ConnectionError("refused")
            with pytest.raises(LLMError, match="refused"):
                _client().chat([], None)

    def test_malformed_response(self):
        resp = MagicMock()
        resp.choices = []
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = resp
            with pytest.raises(LLMError, match="malformed"):
                _client().chat([], None)
