"""Exception hierarchy shared by the agent core."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown model, bad key types, etc.)."""


class LLMError(AgentError):
    """Raised when the model backend call fails (network, status, malformed body)."""


class MaxTurnsError(AgentError):
    """Raised when the turn budget is exhausted without a final answer."""

    def __init__(self, turns: int):
        super().__init__(f"max turns reached ({turns})")
        self.turns = turns


class LockError(AgentError):
    """Base class for session lock failures."""


class SessionLockedError(LockError):
    """Raised by acquire_lock() when a live lock marker already exists."""


class LockTimeoutError(LockError):
    """Raised by wait_for_lock() when the marker outlives the timeout."""


class McpError(AgentError):
    """Raised when a remote tool server answers a request with a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message


class McpClosedError(McpError):
    """Raised for requests pending or issued after the server process went away."""

    def __init__(self, message: str = "client closed"):
        super().__init__(-32000, message)

    def __str__(self) -> str:
        return self.message
