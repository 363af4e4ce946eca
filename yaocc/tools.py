"""Tool descriptors and routing of model tool calls to their handlers.

Built-in skills are exposed to the model as ``yaocc_<skill>[_<action>]``
tools whose arguments are mapped onto the command-line grammar of the
agent's own entry point. ``yaocc_<skill>_usage`` returns a skill's
documentation, ``yaocc_exec`` runs a policy-checked shell command, and
``mcp__<server>__<tool>`` names are forwarded to remote tool servers.
"""

import json
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .commands import DEFAULT_TIMEOUT, CommandDenied, run_argv, run_shell, validate_command
from .config import Config
from .errors import ConfigError
from .llm import ToolDescriptor
from .mcp_client import McpManager, split_tool_name
from .skills import BUILTIN_COMMANDS, Skill, canonical_skill_name

CLI_PREFIX = "yaocc"
TOOL_PREFIX = "yaocc_"
USAGE_SUFFIX = "_usage"
EXEC_TOOL = "yaocc_exec"

PROVIDER_PLACEHOLDER = "CURRENT_PROVIDER"
SESSION_PLACEHOLDER = "CURRENT_SESSION_ID"
UNKNOWN_PROVIDER = "unknown"


class ToolArgumentError(ValueError):
    """Raised when tool arguments cannot be mapped onto a command line."""


# --- Skill table ---


@dataclass(frozen=True)
class Param:
    name: str
    type: str  # JSON-schema type: string, boolean, integer, array
    description: str
    required: bool = False
    flag: str | None = None  # "--opt" style option; None means positional
    split: bool = False  # shell-split a string into several positionals


@dataclass(frozen=True)
class Action:
    name: str  # "" for single-action skills
    description: str
    params: tuple[Param, ...] = ()
    # Leading argv words; None means (<skill>, <action>)
    command: tuple[str, ...] | None = None

    @property
    def required(self) -> list[str]:
        return [p.name for p in self.params if p.required]


GENERIC = "generic"  # single free-form `args` string
SHELL = "shell"  # yaocc_exec

_PATH = Param("path", "string", "Path to the file", required=True)

SKILL_TOOLS: dict[str, tuple[Action, ...] | str] = {
    "cron": (
        Action("list", "List all configured cron jobs"),
        Action(
            "add",
            "Add a new cron job. ALWAYS use this to schedule events, "
            "recurring tasks, and future actions.",
            (
                Param("name", "string", "Name of the cron job", required=True, flag="--name"),
                Param(
                    "schedule",
                    "string",
                    "Cron schedule expression, e.g. '0 9 * * *'",
                    required=True,
                    flag="--schedule",
                ),
                Param(
                    "prompt",
                    "string",
                    "The prompt to send to the LLM (for prompt-type jobs)",
                    flag="--prompt",
                ),
                Param(
                    "script",
                    "string",
                    "Path to a script to execute (for script-type jobs)",
                    flag="--script",
                ),
                Param(
                    "use_history",
                    "boolean",
                    "Whether to use target session history state",
                    flag="--use-history",
                ),
                Param(
                    "target_provider",
                    "string",
                    f"The messaging provider to target. Use '{PROVIDER_PLACEHOLDER}' "
                    "to target the current session's provider.",
                    flag="--target-provider",
                ),
                Param(
                    "target_id",
                    "string",
                    f"The ID of the target chat/session. Use '{SESSION_PLACEHOLDER}' "
                    "to target the current session's ID.",
                    flag="--target-id",
                ),
            ),
        ),
        Action(
            "remove",
            "Remove an existing cron job",
            (Param("name", "string", "Name of the cron job", required=True),),
        ),
        Action(
            "run",
            "Force run a specific cron job by its index",
            (
                Param(
                    "index",
                    "integer",
                    "The index of the job to run (obtain via list action)",
                    required=True,
                ),
            ),
        ),
    ),
    "file": (
        Action("read", "Read content of a file", (_PATH,)),
        Action(
            "write",
            "Write or overwrite content to a file",
            (_PATH, Param("content", "string", "Total content to write", required=True)),
        ),
        Action(
            "append",
            "Append content to the end of a file",
            (_PATH, Param("content", "string", "Content to append", required=True)),
        ),
        Action(
            "list",
            "List files in a directory",
            (Param("path", "string", "Directory to list (defaults to the workspace)"),),
        ),
        Action("delete", "Delete a file", (_PATH,)),
        Action("mkdir", "Create a directory", (_PATH,)),
        Action(
            "run",
            "Run a script file",
            (
                _PATH,
                Param("args", "array", "Arguments passed to the script"),
            ),
        ),
    ),
    "fetch": (
        Action(
            "",
            "",
            (Param("url", "string", "The HTTP/HTTPS URL to fetch.", required=True),),
        ),
    ),
    "websearch": (
        Action(
            "",
            "",
            (
                Param(
                    "query",
                    "string",
                    "The search query to search the web for.",
                    required=True,
                ),
            ),
        ),
    ),
    "prompt": (
        Action(
            "",
            "",
            (
                Param(
                    "message",
                    "string",
                    "The prompt or message to immediately pass to the LLM statelessly.",
                    required=True,
                ),
            ),
        ),
    ),
    "skills": (
        Action(
            "register",
            "Register a new skill from a script",
            (
                Param("name", "string", "The name of the skill to register.", required=True),
                Param("path", "string", "The path to the script.", required=True),
            ),
        ),
        Action(
            "unregister",
            "Unregister an existing skill",
            (Param("name", "string", "The name of the skill.", required=True),),
        ),
        Action("list", "List all registered and built-in skills"),
        Action(
            "get",
            "Read the SKILL.md instructions for a skill",
            (Param("name", "string", "The name of the skill.", required=True),),
        ),
        Action("tutorial", "Read the tutorial on creating skills"),
        Action("help", "Print help for skills management"),
        Action(
            "run",
            "Execute a registered custom skill explicitly.",
            (
                Param(
                    "name",
                    "string",
                    "The name of the custom skill you want to run.",
                    required=True,
                ),
                Param(
                    "args",
                    "string",
                    "The command line arguments to pass to the custom skill.",
                    split=True,
                ),
            ),
            command=(),
        ),
    ),
    "init": GENERIC,
    "chat": GENERIC,
    "model": GENERIC,
    "exec": SHELL,
}


def validate_tool_table(
    table: dict[str, tuple[Action, ...] | str],
    builtins: tuple[str, ...] = BUILTIN_COMMANDS,
) -> None:
    """Check the skill table at startup. Raises ConfigError on any gap."""
    for skill in builtins:
        if skill not in table:
            raise ConfigError(f"built-in skill {skill!r} has no tool mapping")
    for skill, entry in table.items():
        if entry in (GENERIC, SHELL):
            continue
        if not isinstance(entry, tuple) or not entry:
            raise ConfigError(f"tool mapping for {skill!r} must list its actions")
        seen_actions = set()
        for action in entry:
            if action.name in seen_actions:
                raise ConfigError(f"duplicate action {action.name!r} for {skill!r}")
            seen_actions.add(action.name)
            names = [p.name for p in action.params]
            if len(names) != len(set(names)):
                raise ConfigError(
                    f"duplicate parameter in {skill!r} action {action.name!r}"
                )
            for p in action.params:
                if p.type not in ("string", "boolean", "integer", "array"):
                    raise ConfigError(
                        f"{skill!r} action {action.name!r}: bad type {p.type!r} for {p.name!r}"
                    )
                if p.flag is None and p.type == "boolean":
                    raise ConfigError(
                        f"{skill!r} action {action.name!r}: boolean {p.name!r} needs a flag"
                    )


def tool_name(skill: str, action: str = "") -> str:
    name = f"{TOOL_PREFIX}{skill.replace('-', '_')}"
    return f"{name}_{action}" if action else name


def usage_tool_name(skill: str) -> str:
    return tool_name(skill) + USAGE_SUFFIX


def _format_scalar(param: Param, value: Any) -> str:
    if param.type == "integer":
        if isinstance(value, bool):
            raise ToolArgumentError(f"{param.name!r} must be an integer")
        try:
            return str(int(value))
        except (TypeError, ValueError):
            raise ToolArgumentError(f"{param.name!r} must be an integer, got {value!r}")
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def build_command_args(skill: str, action: Action, args: dict) -> list[str]:
    """Convert tool arguments into the skill's ordered command-line vector.

    Parameters are emitted in table order. Empty optional values are
    omitted. Raises ToolArgumentError when a required value is missing.
    """
    missing = [
        p.name for p in action.params if p.required and args.get(p.name) in (None, "")
    ]
    if missing:
        raise ToolArgumentError(f"missing required argument(s): {', '.join(missing)}")

    if action.command is not None:
        argv = list(action.command)
    else:
        argv = [skill] + ([action.name] if action.name else [])

    for p in action.params:
        value = args.get(p.name)
        if value is None or value == "" or value == []:
            continue
        if p.type == "boolean":
            if value is True or str(value).lower() == "true":
                argv.append(p.flag)
            continue
        if p.type == "array":
            items = value if isinstance(value, list) else [value]
            argv.extend(str(v) for v in items)
            continue
        text = _format_scalar(p, value)
        if p.split:
            try:
                argv.extend(shlex.split(text))
            except ValueError as e:
                raise ToolArgumentError(f"malformed {p.name!r}: {e}")
        elif p.flag:
            argv.extend([p.flag, text])
        else:
            argv.append(text)
    return argv


def substitute_placeholders(value: Any, provider_name: str, target_id: str) -> Any:
    """Replace the provider and session placeholders in every string.

    Walks dicts and lists; non-string leaves are returned unchanged.
    """
    if isinstance(value, str):
        return value.replace(PROVIDER_PLACEHOLDER, provider_name).replace(
            SESSION_PLACEHOLDER, target_id
        )
    if isinstance(value, list):
        return [substitute_placeholders(v, provider_name, target_id) for v in value]
    if isinstance(value, dict):
        return {
            k: substitute_placeholders(v, provider_name, target_id)
            for k, v in value.items()
        }
    return value


def provider_name_of(provider) -> str:
    if provider is None:
        return UNKNOWN_PROVIDER
    return provider.name() or UNKNOWN_PROVIDER


def _schema(action: Action) -> dict:
    props = {}
    for p in action.params:
        prop: dict = {"type": p.type, "description": p.description}
        if p.type == "array":
            prop["items"] = {"type": "string"}
        props[p.name] = prop
    return {"type": "object", "properties": props, "required": action.required}


def build_tools(
    skills: dict[str, Skill],
    config: Config,
    table: dict[str, tuple[Action, ...] | str] = SKILL_TOOLS,
) -> list[ToolDescriptor]:
    """Descriptors for every enabled built-in skill, plus the shell tool."""
    tools: list[ToolDescriptor] = []
    for skill in skills.values():
        if not skill.is_builtin or skill.name == "exec":
            continue
        if not config.is_cmd_enabled(skill.name):
            continue

        tools.append(
            ToolDescriptor(
                name=usage_tool_name(skill.name),
                description=(
                    "Retrieve the full markdown manual, available arguments, "
                    f"and examples for the '{skill.name}' command"
                ),
            )
        )

        entry = table.get(skill.name)
        if isinstance(entry, tuple):
            for action in entry:
                desc = skill.description
                if action.description:
                    desc = f"{desc} - {action.description}" if desc else action.description
                tools.append(
                    ToolDescriptor(
                        name=tool_name(skill.name, action.name),
                        description=desc,
                        parameters=_schema(action),
                    )
                )
        else:
            tools.append(
                ToolDescriptor(
                    name=tool_name(skill.name),
                    description=skill.description,
                    parameters={
                        "type": "object",
                        "properties": {
                            "args": {
                                "type": "string",
                                "description": (
                                    "Arguments to pass to the tool command. E.g. for "
                                    f"'{CLI_PREFIX} {skill.name} list' pass 'list'."
                                ),
                            }
                        },
                    },
                )
            )

    if config.is_cmd_enabled("exec"):
        tools.append(
            ToolDescriptor(
                name=EXEC_TOOL,
                description="Executes a shell command on the host machine. e.g ls -la",
                parameters={
                    "type": "object",
                    "properties": {
                        "command": {
                            "type": "string",
                            "description": "The exact shell command string to execute.",
                        }
                    },
                    "required": ["command"],
                },
            )
        )
    return tools


# --- Router ---


class ToolRouter:
    """Resolve a tool call to usage text, the shell, a skill or a remote tool.

    Tool failures never raise: they come back as "error: ..." text so the
    model can react within the same turn budget.
    """

    def __init__(
        self,
        config: Config,
        skills: dict[str, Skill],
        mcp: McpManager | None = None,
        table: dict[str, tuple[Action, ...] | str] = SKILL_TOOLS,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        validate_tool_table(table)
        self.config = config
        self.skills = skills
        self.mcp = mcp
        self.table = table
        self.timeout = timeout
        self._actions: dict[str, tuple[str, Action]] = {}
        for skill, entry in table.items():
            if isinstance(entry, tuple):
                for action in entry:
                    self._actions[tool_name(skill, action.name)] = (skill, action)

    @property
    def cwd(self) -> Path:
        return self.config.config_dir

    def tool_set(self) -> tuple[list[ToolDescriptor], dict[str, tuple[str, str]]]:
        """Rebuild this turn's descriptors and remote routes."""
        tools = build_tools(self.skills, self.config, self.table)
        routes: dict[str, tuple[str, str]] = {}
        if self.mcp is not None:
            remote, routes = self.mcp.tool_set()
            tools.extend(remote)
        return tools, routes

    def dispatch(
        self,
        name: str,
        raw_args: str | dict | None,
        provider=None,
        target_id: str = "",
        routes: dict[str, tuple[str, str]] | None = None,
    ) -> str:
        if isinstance(raw_args, dict):
            args = raw_args
        else:
            try:
                args = json.loads(raw_args) if raw_args and raw_args.strip() else {}
            except json.JSONDecodeError as e:
                return f"error: invalid JSON in tool arguments: {e}"
        if not isinstance(args, dict):
            return "error: tool arguments must be a JSON object"
        args = substitute_placeholders(args, provider_name_of(provider), target_id)

        if name.startswith(TOOL_PREFIX) and name.endswith(USAGE_SUFFIX):
            return self.usage(name[: -len(USAGE_SUFFIX)])

        if name == EXEC_TOOL:
            command = args.get("command")
            if not isinstance(command, str) or not command.strip():
                return "error: missing required argument: command"
            return self.run_exec(command)

        if name in self._actions:
            skill, action = self._actions[name]
            if not self.config.is_cmd_enabled(skill):
                return f"error: command {skill!r} is disabled"
            try:
                argv = build_command_args(skill, action, args)
            except ToolArgumentError as e:
                return f"error: {e}"
            return self.run_cli(argv)

        if name.startswith(TOOL_PREFIX):
            skill = self._resolve_skill(name[len(TOOL_PREFIX) :])
            if skill is not None:
                if not self.config.is_cmd_enabled(skill):
                    return f"error: command {skill!r} is disabled"
                raw = args.get("args", "")
                try:
                    extra = shlex.split(raw) if isinstance(raw, str) else [str(a) for a in raw]
                except ValueError as e:
                    return f"error: malformed args: {e}"
                return self.run_cli([skill, *extra])

        remote = split_tool_name(name)
        if remote is not None:
            if self.mcp is None:
                return f"error: no MCP servers configured for {name!r}"
            server, tool = (routes or {}).get(name, remote)
            text, _is_error = self.mcp.call_tool(server, tool, args)
            return text

        return f"error: unknown tool: {name!r}"

    def _resolve_skill(self, base: str) -> str | None:
        """Map the part after the tool prefix to a generic-args skill name."""
        candidates = [base, base.replace("_", "-")]
        for cand in candidates:
            cand = canonical_skill_name(cand)
            if self.table.get(cand) == GENERIC:
                return cand
            if cand in self.skills and not self.skills[cand].is_builtin:
                return cand
        return None

    def usage(self, base: str) -> str:
        """Documentation body of the skill named by a usage tool, verbatim."""
        if base.startswith(TOOL_PREFIX):
            base = base[len(TOOL_PREFIX) :]
        for cand in (base, base.replace("_", "-")):
            skill = self.skills.get(canonical_skill_name(cand))
            if skill is not None:
                return skill.body
        return f"error: no usage documentation for {base!r}"

    def run_exec(self, command: str) -> str:
        if not self.config.is_cmd_enabled("exec"):
            return "error: command 'exec' is disabled"
        try:
            validate_command(command, self.config.cmd_config("exec"))
        except CommandDenied as e:
            return f"error: {e}"
        return run_shell(command, cwd=self.cwd, timeout=self.timeout)

    def run_cli(self, argv: list[str]) -> str:
        """Run the agent's own entry point with argv."""
        return run_argv([self.config.cli_path, *argv], cwd=self.cwd, timeout=self.timeout)

    def run_command_line(
        self, command: str, provider=None, target_id: str = ""
    ) -> str:
        """Execute one text-mode command line such as ``yaocc file read x``."""
        command = substitute_placeholders(command, provider_name_of(provider), target_id)
        try:
            argv = shlex.split(command)
        except ValueError as e:
            return f"error: malformed command: {e}"
        if not argv or argv[0] != CLI_PREFIX:
            return f"error: only {CLI_PREFIX} commands may be executed"
        if len(argv) < 2:
            return self.run_cli([])
        sub = argv[1]
        if sub == "exec":
            parts = command.strip().split(None, 2)
            if len(parts) < 3:
                return "error: missing command for exec"
            return self.run_exec(parts[2])
        skill = canonical_skill_name(sub)
        if skill in BUILTIN_COMMANDS and not self.config.is_cmd_enabled(skill):
            return f"error: command {skill!r} is disabled"
        return self.run_cli(argv[1:])
