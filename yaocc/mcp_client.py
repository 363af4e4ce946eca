"""MCP (Model Context Protocol) client over subprocess stdio.

Each configured server is launched once as a child process. Messages are
newline-delimited JSON-RPC 2.0 objects on the child's stdin/stdout.
Requests are multiplexed by integer id: a reader thread resolves the
matching Future as responses arrive, in whatever order they arrive.
"""

import atexit
import copy
import itertools
import json
import logging
import os
import re
import subprocess
import threading
from concurrent.futures import Future
from importlib import metadata

from . import fmt
from .errors import ConfigError, McpClosedError, McpError
from .llm import ToolDescriptor

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "yaocc"
DEFAULT_REQUEST_TIMEOUT = 120
STARTUP_TIMEOUT = 30
TOOL_PREFIX = "mcp__"

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_DOUBLE_UNDER_RE = re.compile(r"__+")


def _client_version() -> str:
    try:
        return metadata.version("yaocc")
    except metadata.PackageNotFoundError:
        return "0.0.0"


class McpClient:
    """One long-lived connection to a stdio MCP server."""

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ):
        self.name = name
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})

        self._proc: subprocess.Popen | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, Future] = {}
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._closed = False
        self._eof = False  # stdout reached EOF (process exited)
        self._readers: list[threading.Thread] = []
        self.server_info: dict = {}

    # --- Lifecycle ---

    def start(self) -> None:
        """Spawn the server process and its stdout/stderr reader threads."""
        env = os.environ.copy()
        env.update(self.env)
        self._proc = subprocess.Popen(
            [self.command, *self.args],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
        )
        for target, label in (
            (self._read_stdout, "stdout"),
            (self._read_stderr, "stderr"),
        ):
            t = threading.Thread(
                target=target, name=f"mcp-{self.name}-{label}", daemon=True
            )
            t.start()
            self._readers.append(t)

    @property
    def closed(self) -> bool:
        return self._closed or self._eof

    def close(self) -> None:
        """Idempotent shutdown. Fails every pending request with McpClosedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        proc = self._proc
        if proc is not None:
            try:
                proc.stdin.close()
            except OSError:
                pass
            try:
                proc.terminate()
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    logger.warning(f"MCP server {self.name!r} did not exit after kill")
            except OSError:
                pass

        self._fail_pending("client closed")

        for t in self._readers:
            if t is not threading.current_thread():
                t.join(timeout=2)

    # --- Protocol ---

    def initialize(self, timeout: float = STARTUP_TIMEOUT) -> dict:
        """Run the initialize / notifications/initialized handshake."""
        result = self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": _client_version()},
            },
            timeout=timeout,
        )
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        self.notify("notifications/initialized", {})
        return result

    def list_tools(self, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> list[dict]:
        result = self.request("tools/list", {}, timeout=timeout)
        tools = result.get("tools", []) if isinstance(result, dict) else []
        return [t for t in tools if isinstance(t, dict) and t.get("name")]

    def call_tool(
        self, name: str, arguments: dict, timeout: float = DEFAULT_REQUEST_TIMEOUT
    ) -> dict:
        result = self.request(
            "tools/call", {"name": name, "arguments": arguments}, timeout=timeout
        )
        return result if isinstance(result, dict) else {"content": []}

    def send_request(self, method: str, params: dict | None = None) -> Future:
        """Write a request and return the Future its response will resolve."""
        future: Future = Future()
        with self._lock:
            if self._closed or self._eof:
                raise McpClosedError()
            request_id = next(self._ids)
            self._pending[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            self._write(message)
        except (OSError, ValueError) as e:
            with self._lock:
                self._pending.pop(request_id, None)
            raise McpClosedError(f"client closed: {e}")
        return future

    def request(
        self,
        method: str,
        params: dict | None = None,
        timeout: float | None = DEFAULT_REQUEST_TIMEOUT,
    ):
        """Send a request and block for its result.

        Raises McpError for JSON-RPC errors, McpClosedError if the process
        goes away, TimeoutError if no response arrives in time.
        """
        future = self.send_request(method, params)
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            with self._lock:
                for request_id, pending in list(self._pending.items()):
                    if pending is future:
                        del self._pending[request_id]
            raise

    def notify(self, method: str, params: dict | None = None) -> None:
        if self.closed:
            raise McpClosedError()
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        try:
            self._write(message)
        except (OSError, ValueError) as e:
            raise McpClosedError(f"client closed: {e}")

    # --- Internal helpers ---

    def _write(self, message: dict) -> None:
        data = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        with self._write_lock:
            self._proc.stdin.write(data)
            self._proc.stdin.flush()

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(McpClosedError(reason))

    def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            logger.info(f"MCP server {self.name!r} output: {line}")
            return
        if not isinstance(msg, dict) or msg.get("jsonrpc") != "2.0":
            logger.info(f"MCP server {self.name!r} output: {line}")
            return

        if "id" in msg and msg["id"] is not None and "method" not in msg:
            with self._lock:
                future = self._pending.pop(msg["id"], None)
            if future is None:
                logger.debug(f"MCP server {self.name!r}: response for unknown id {msg['id']!r}")
                return
            if "error" in msg:
                err = msg["error"] if isinstance(msg["error"], dict) else {}
                future.set_exception(
                    McpError(err.get("code", -32603), err.get("message", "unknown error"))
                )
            else:
                future.set_result(msg.get("result"))
        elif "method" in msg and "id" not in msg:
            logger.debug(
                f"MCP server {self.name!r} notification {msg['method']}: {msg.get('params')}"
            )
        else:
            # Server-to-client requests are not supported.
            logger.debug(f"MCP server {self.name!r}: ignoring request {msg.get('method')!r}")

    def _read_stdout(self) -> None:
        try:
            for raw in self._proc.stdout:
                self._handle_line(raw.decode("utf-8", errors="replace"))
        except (OSError, ValueError):
            pass  # pipe closed during shutdown
        finally:
            with self._lock:
                self._eof = True
            self._fail_pending("client closed")

    def _read_stderr(self) -> None:
        try:
            for raw in self._proc.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.debug(f"MCP server {self.name!r} stderr: {line}")
        except (OSError, ValueError):
            pass


class McpManager:
    """Owns one McpClient per configured server.

    Servers that fail to start or handshake are logged and excluded; they
    are not retried. Tool descriptors are re-fetched on every call to
    tool_set() so the per-turn set reflects what each server advertises.
    """

    def __init__(self, server_configs: dict[str, dict], verbose: bool = False):
        self._server_configs = server_configs
        self._verbose = verbose
        self._clients: dict[str, McpClient] = {}
        self._closed = False

    @property
    def servers(self) -> list[str]:
        return list(self._clients)

    def start(self) -> None:
        """Launch and handshake every configured server."""
        for name, config in self._server_configs.items():
            client = McpClient(
                name,
                config["command"],
                config.get("args", []),
                config.get("env"),
            )
            try:
                client.start()
                client.initialize(timeout=STARTUP_TIMEOUT)
                tool_count = len(client.list_tools(timeout=STARTUP_TIMEOUT))
            except Exception as e:
                client.close()
                logger.warning(f"MCP server {name!r} failed to start: {e}")
                if self._verbose:
                    fmt.mcp_server_error(name, str(e))
                continue
            self._clients[name] = client
            if self._verbose:
                fmt.mcp_server_start(name, tool_count)

        atexit.register(self.close)

    def tool_set(self) -> tuple[list[ToolDescriptor], dict[str, tuple[str, str]]]:
        """Return (descriptors, routes) for all live servers.

        routes maps the namespaced tool name to (server, original name).
        A server whose tools collide after sanitization contributes none.
        """
        descriptors: list[ToolDescriptor] = []
        routes: dict[str, tuple[str, str]] = {}
        for server_name, client in list(self._clients.items()):
            if client.closed:
                continue
            try:
                tools = client.list_tools()
            except Exception as e:
                logger.warning(f"MCP server {server_name!r}: tools/list failed: {e}")
                continue

            server_descs = []
            server_routes = {}
            collision = False
            for tool in tools:
                desc = _mcp_tool_to_descriptor(server_name, tool)
                if desc.name in routes or desc.name in server_routes:
                    collision = True
                    break
                server_descs.append(desc)
                server_routes[desc.name] = (server_name, tool["name"])
            if collision:
                logger.warning(
                    f"MCP server {server_name!r}: tool name collision after "
                    f"sanitization, skipping all its tools"
                )
                continue
            descriptors.extend(server_descs)
            routes.update(server_routes)
        return descriptors, routes

    def call_tool(self, server_name: str, tool_name: str, arguments: dict) -> tuple[str, bool]:
        """Invoke a tool and return (result_text, is_error)."""
        client = self._clients.get(server_name)
        if client is None:
            return (f"error: MCP server {server_name!r} is not connected", True)
        try:
            result = client.call_tool(tool_name, arguments)
        except McpClosedError:
            return (
                f"error: MCP server {server_name!r} is unavailable (client closed)",
                True,
            )
        except (McpError, TimeoutError) as e:
            return (f"error: MCP server {server_name!r} failed: {e}", True)
        return _normalize_result(result)

    def close(self) -> None:
        """Idempotent shutdown."""
        if self._closed:
            return
        self._closed = True
        for client in self._clients.values():
            client.close()


def split_tool_name(namespaced: str) -> tuple[str, str] | None:
    """Split "mcp__<server>__<tool>" into (server, tool), or None."""
    if not namespaced.startswith(TOOL_PREFIX):
        return None
    server, sep, tool = namespaced[len(TOOL_PREFIX) :].partition("__")
    if not sep or not server or not tool:
        return None
    return server, tool


def _sanitize_tool_name(name: str) -> str:
    """Sanitize an MCP tool name for use in namespaced identifiers."""
    name = _SANITIZE_RE.sub("_", name)
    name = _DOUBLE_UNDER_RE.sub("_", name)
    return name.strip("_-")


def validate_server_name(name: str) -> None:
    """Validate an MCP server name. Raises ConfigError if invalid."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )
    if "__" in name:
        raise ConfigError(
            f"MCP server name {name!r} must not contain double underscores"
        )


def _mcp_tool_to_descriptor(server_name: str, tool: dict) -> ToolDescriptor:
    """Convert a tools/list entry to a namespaced ToolDescriptor."""
    namespaced = f"{TOOL_PREFIX}{server_name}__{_sanitize_tool_name(tool['name'])}"
    return ToolDescriptor(
        name=namespaced,
        description=tool.get("description") or f"MCP tool from {server_name}",
        parameters=_convert_schema(tool.get("inputSchema") or {}),
    )


def _convert_schema(input_schema: dict) -> dict:
    """Convert MCP inputSchema to OpenAI-compatible parameters.

    Keep everything, only strip keys known to cause provider rejections.
    """
    schema = copy.deepcopy(input_schema)

    if "type" not in schema:
        schema["type"] = "object"
    if "properties" not in schema:
        schema["properties"] = {}

    schema.pop("$schema", None)
    schema.pop("$id", None)

    return schema


def _normalize_result(result: dict) -> tuple[str, bool]:
    """Convert a tools/call result to ``(text, is_error)``.

    Text blocks are joined with newlines; any other block type becomes a
    ``[<type> content]`` placeholder.
    """
    parts = []
    for block in result.get("content") or []:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            parts.append(block.get("text", ""))
        else:
            parts.append(f"[{block_type or 'unknown'} content]")

    text = "\n".join(parts)

    if result.get("isError"):
        err = f"error: {text}" if text else "error: MCP tool returned an error"
        return (err, True)
    return (text if text else "(empty result)", False)
