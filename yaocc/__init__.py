"""Agent execution core: ReAct loop, tool routing, MCP stdio client, transcripts."""

from .agent import Agent, ToolMode
from .config import Config, load_config
from .errors import AgentError, ConfigError, LLMError, MaxTurnsError
from .llm import LLMClient, Message, ToolCall, ToolDescriptor
from .session import SessionStore

__all__ = [
    "Agent",
    "AgentError",
    "Config",
    "ConfigError",
    "LLMClient",
    "LLMError",
    "MaxTurnsError",
    "Message",
    "SessionStore",
    "ToolCall",
    "ToolDescriptor",
    "ToolMode",
    "load_config",
]
