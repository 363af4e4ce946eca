"""Model backend adapter: message types and a LiteLLM-backed chat client."""

import json
from dataclasses import dataclass, field
from typing import Any

from . import fmt
from .config import ModelConfig, ProviderConfig
from .errors import LLMError

DEFAULT_TIMEOUT_MS = 120_000


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"  # raw JSON payload as produced by the model

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Message:
    role: str  # system | user | assistant | tool
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    def to_api(self) -> dict:
        """Render as an OpenAI-style message dict.

        A tool result without a correlating call id (text-mode command
        output) has no matching tool_calls entry, so it is sent as a user
        message instead.
        """
        if self.role == "tool" and not self.tool_call_id:
            return {"role": "user", "content": self.content}
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_api() for tc in self.tool_calls]
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.name and self.role == "tool":
            msg["name"] = self.name
        return msg


@dataclass
class ToolDescriptor:
    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_api(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _tool_calls_from_response(raw_calls) -> list[ToolCall]:
    calls = []
    for i, tc in enumerate(raw_calls or []):
        fn = tc.function
        arguments = fn.arguments
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        calls.append(
            ToolCall(
                id=tc.id or f"call_{i}",
                name=fn.name,
                arguments=arguments or "{}",
            )
        )
    return calls


class LLMClient:
    """Chat(messages, tools) -> (text, tool_calls) over litellm.completion."""

    def __init__(
        self,
        provider: ProviderConfig,
        model: ModelConfig,
        *,
        verbose: bool = False,
    ):
        self.provider = provider
        self.model = model
        self.verbose = verbose

    @property
    def model_string(self) -> str:
        return f"{self.provider.type}/{self.model.model}"

    @property
    def timeout(self) -> float:
        ms = self.model.timeout_ms or self.provider.timeout_ms or DEFAULT_TIMEOUT_MS
        return ms / 1000

    def chat(
        self,
        messages: list[Message],
        tools: list[ToolDescriptor] | None = None,
    ) -> tuple[str, list[ToolCall]]:
        """Call the backend once. Raises LLMError on any failure."""
        import litellm

        litellm.suppress_debug_info = True

        kwargs: dict[str, Any] = dict(
            model=self.model_string,
            messages=[m.to_api() for m in messages],
            timeout=self.timeout,
        )
        if self.provider.base_url:
            kwargs["api_base"] = self.provider.base_url
        if self.provider.api_key:
            kwargs["api_key"] = self.provider.api_key
        if self.model.max_tokens:
            kwargs["max_tokens"] = self.model.max_tokens
        if tools:
            kwargs["tools"] = [t.to_api() for t in tools]
            kwargs["tool_choice"] = "auto"
        if self.model.reasoning is True:
            kwargs["reasoning_effort"] = "medium"
        elif isinstance(self.model.reasoning, str) and self.model.reasoning:
            kwargs["reasoning_effort"] = self.model.reasoning

        if self.verbose:
            fmt.model_info(
                f"Calling model {self.model_string} with {len(messages)} messages"
                f", {len(tools or [])} tools"
            )

        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise LLMError(f"LLM call failed: {e}")

        try:
            message = response.choices[0].message
        except (AttributeError, IndexError, TypeError) as e:
            raise LLMError(f"LLM returned a malformed response: {e}")

        return message.content or "", _tool_calls_from_response(
            getattr(message, "tool_calls", None)
        )
