"""Configuration file loading and validation for yaocc.

Reads TOML config from <config_dir>/config.toml. The config directory is
resolved from $YAOCC_CONFIG_DIR, then ~/config/.yaocc, then the working
directory. String values may reference environment variables as ${VAR}.
"""

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import fmt
from .errors import ConfigError

CONFIG_FILENAME = "config.toml"
DEFAULT_MAX_TURNS = 5
DEFAULT_CLI_PATH = "yaocc"
SUMMARY_STRATEGIES = ("rolling", "full")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "max_turns": int,
    "native_tool_calling": bool,
    "cli_path": str,
    "verbose": bool,
    "timezone": str,
    "models": dict,
    "session": dict,
    "cmds": list,
    "mcp_servers": dict,
    "skills": dict,
}

PROVIDER_KEYS: dict[str, type | tuple[type, ...]] = {
    "base_url": str,
    "api_key": str,
    "type": str,
    "timeout_ms": int,
    "models": list,
}

MODEL_KEYS: dict[str, type | tuple[type, ...]] = {
    "id": str,
    "model": str,
    "name": str,
    "max_tokens": int,
    "max_turns": int,
    "timeout_ms": int,
    "tools": bool,
    "reasoning": (str, bool),
}

SESSION_KEYS: dict[str, type | tuple[type, ...]] = {
    "summarize": bool,
    "summary_model": str,
    "summary_strategy": str,
}

CMD_KEYS: dict[str, type | tuple[type, ...]] = {
    "name": str,
    "enabled": bool,
    "whitelist": list,
    "blacklist": list,
}

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class ModelConfig:
    id: str
    model: str
    name: str = ""
    max_tokens: int = 0
    max_turns: int = 0  # 0 = use the global budget
    timeout_ms: int = 0
    tools: bool | None = None  # None = follow native_tool_calling
    reasoning: str | bool | None = None


@dataclass
class ProviderConfig:
    name: str
    base_url: str = ""
    api_key: str = ""
    type: str = "openai"
    timeout_ms: int = 0
    models: list[ModelConfig] = field(default_factory=list)

    def find_model(self, model_id: str) -> ModelConfig | None:
        for m in self.models:
            if m.id == model_id:
                return m
        return None


@dataclass
class SessionConfig:
    summarize: bool = False
    summary_model: str = ""  # "" = reuse the main model
    summary_strategy: str = "rolling"


@dataclass
class CmdConfig:
    name: str
    enabled: bool = True
    whitelist: list[str] = field(default_factory=list)
    blacklist: list[str] = field(default_factory=list)


@dataclass
class Config:
    config_dir: Path
    max_turns: int = DEFAULT_MAX_TURNS
    native_tool_calling: bool = False
    cli_path: str = DEFAULT_CLI_PATH
    verbose: bool = False
    timezone: str = ""
    model: str = ""  # "<provider>/<model id>"
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    session: SessionConfig = field(default_factory=SessionConfig)
    cmds: list[CmdConfig] = field(default_factory=list)
    mcp_servers: dict[str, dict] = field(default_factory=dict)
    registered_skills: dict[str, str] = field(default_factory=dict)

    @property
    def sessions_dir(self) -> Path:
        return self.config_dir / "sessions"

    def is_cmd_enabled(self, name: str) -> bool:
        """All commands are enabled by default except exec."""
        cmd = self.cmd_config(name)
        if cmd is not None:
            return cmd.enabled
        return name != "exec"

    def cmd_config(self, name: str) -> CmdConfig | None:
        for cmd in self.cmds:
            if cmd.name == name:
                return cmd
        return None

    def resolve_model(self, ref: str | None = None) -> tuple[ProviderConfig, ModelConfig]:
        """Resolve a "<provider>/<model id>" reference. Raises ConfigError."""
        ref = ref or self.model
        if not ref:
            raise ConfigError("no model selected (set models.model)")
        if "/" not in ref:
            raise ConfigError(f"model reference {ref!r} must be <provider>/<model id>")
        provider_name, model_id = ref.split("/", 1)
        provider = self.providers.get(provider_name)
        if provider is None:
            raise ConfigError(f"unknown model provider {provider_name!r}")
        model = provider.find_model(model_id)
        if model is None:
            raise ConfigError(
                f"model {model_id!r} not found for provider {provider_name!r}"
            )
        return provider, model

    def turn_budget(self, model: ModelConfig | None = None) -> int:
        if model is not None and model.max_turns > 0:
            return model.max_turns
        if self.max_turns > 0:
            return self.max_turns
        return DEFAULT_MAX_TURNS


# --- Internal helpers ---


def resolve_config_dir() -> Path:
    """Return the config directory: $YAOCC_CONFIG_DIR, ~/config/.yaocc, or cwd."""
    env = os.environ.get("YAOCC_CONFIG_DIR")
    if env:
        return Path(env)
    home_dir = Path.home() / "config" / ".yaocc"
    if home_dir.is_dir():
        return home_dir
    return Path.cwd()


def resolve_path(base_dir: Path, path_str: str) -> Path:
    """Resolve a path relative to the config directory unless absolute."""
    p = Path(path_str).expanduser()
    if p.is_absolute():
        return p
    return base_dir / p


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type (or tuple of types) as a human-readable string."""
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} references in every string of a parsed TOML tree."""
    if isinstance(value, str):
        return _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    return value


def _validate_table(
    table: dict,
    schema: dict[str, type | tuple[type, ...]],
    source: str,
    *,
    strict: bool = False,
) -> None:
    """Check value types against schema.

    Unknown keys are warned about (or rejected when strict is set).
    """
    for key, value in table.items():
        if key not in schema:
            if strict:
                raise ConfigError(f"{source}: unknown key {key!r}")
            fmt.warning(f"{source}: unknown config key {key!r}")
            continue

        expected = schema[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        accepts_bool = expected is bool or (
            isinstance(expected, tuple) and bool in expected
        )
        if isinstance(value, bool) and not accepts_bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )


def _validate_str_list(values: list, source: str) -> list[str]:
    for i, elem in enumerate(values):
        if not isinstance(elem, str):
            raise ConfigError(
                f"{source}[{i}]: expected string, got {type(elem).__name__}"
            )
    return list(values)


def _parse_models(raw: dict, source: str) -> tuple[str, dict[str, ProviderConfig]]:
    selected = raw.get("model", "")
    if not isinstance(selected, str):
        raise ConfigError(f"{source}: models.model expected str")
    providers_raw = raw.get("providers", {})
    if not isinstance(providers_raw, dict):
        raise ConfigError(f"{source}: models.providers must be a table")

    providers: dict[str, ProviderConfig] = {}
    for pname, praw in providers_raw.items():
        prefix = f"{source}: models.providers.{pname}"
        if not isinstance(praw, dict):
            raise ConfigError(f"{prefix} must be a table")
        _validate_table(praw, PROVIDER_KEYS, prefix)
        models = []
        for i, mraw in enumerate(praw.get("models", [])):
            mprefix = f"{prefix}.models[{i}]"
            if not isinstance(mraw, dict):
                raise ConfigError(f"{mprefix} must be a table")
            _validate_table(mraw, MODEL_KEYS, mprefix)
            if not mraw.get("id"):
                raise ConfigError(f"{mprefix}: missing 'id'")
            models.append(
                ModelConfig(
                    id=mraw["id"],
                    model=mraw.get("model") or mraw["id"],
                    name=mraw.get("name", ""),
                    max_tokens=mraw.get("max_tokens", 0),
                    max_turns=mraw.get("max_turns", 0),
                    timeout_ms=mraw.get("timeout_ms", 0),
                    tools=mraw.get("tools"),
                    reasoning=mraw.get("reasoning"),
                )
            )
        providers[pname] = ProviderConfig(
            name=pname,
            base_url=praw.get("base_url", ""),
            api_key=praw.get("api_key", ""),
            type=praw.get("type") or "openai",
            timeout_ms=praw.get("timeout_ms", 0),
            models=models,
        )
    return selected, providers


def _parse_session(raw: dict, source: str) -> SessionConfig:
    _validate_table(raw, SESSION_KEYS, f"{source}: session")
    strategy = raw.get("summary_strategy", "rolling")
    if strategy not in SUMMARY_STRATEGIES:
        raise ConfigError(
            f"{source}: session.summary_strategy must be one of "
            f"{', '.join(SUMMARY_STRATEGIES)}, got {strategy!r}"
        )
    return SessionConfig(
        summarize=raw.get("summarize", False),
        summary_model=raw.get("summary_model", ""),
        summary_strategy=strategy,
    )


def _parse_cmds(raw: list, source: str) -> list[CmdConfig]:
    cmds = []
    for i, craw in enumerate(raw):
        prefix = f"{source}: cmds[{i}]"
        if not isinstance(craw, dict):
            raise ConfigError(f"{prefix} must be a table")
        _validate_table(craw, CMD_KEYS, prefix)
        if not craw.get("name"):
            raise ConfigError(f"{prefix}: missing 'name'")
        cmds.append(
            CmdConfig(
                name=craw["name"],
                enabled=craw.get("enabled", True),
                whitelist=_validate_str_list(
                    craw.get("whitelist", []), f"{prefix}.whitelist"
                ),
                blacklist=_validate_str_list(
                    craw.get("blacklist", []), f"{prefix}.blacklist"
                ),
            )
        )
    return cmds


def _validate_mcp_server_configs(servers: dict, source: str) -> None:
    """Validate each [mcp_servers.<name>] table. Raises ConfigError."""
    from .mcp_client import validate_server_name

    for name, cfg in servers.items():
        validate_server_name(name)
        prefix = f"{source}: mcp_servers.{name}"
        if not isinstance(cfg, dict):
            raise ConfigError(f"{prefix} must be a table")
        if "command" not in cfg:
            raise ConfigError(f"{prefix} must have 'command'")
        if not isinstance(cfg["command"], str) or not cfg["command"]:
            raise ConfigError(f"{prefix}.command must be a non-empty string")
        args = cfg.get("args", [])
        if not isinstance(args, list):
            raise ConfigError(f"{prefix}.args must be a list")
        _validate_str_list(args, f"{prefix}.args")
        env = cfg.get("env", {})
        if not isinstance(env, dict):
            raise ConfigError(f"{prefix}.env must be a table")
        for k, v in env.items():
            if not isinstance(v, str):
                raise ConfigError(f"{prefix}.env.{k} must be a string")


def parse_config(data: dict, config_dir: Path, source: str = "config") -> Config:
    """Build a Config from an already-parsed TOML document."""
    data = _expand_env(data)
    _validate_table(data, CONFIG_KEYS, source)

    config = Config(config_dir=Path(config_dir))
    if "max_turns" in data:
        if data["max_turns"] < 1:
            raise ConfigError(f"{source}: 'max_turns' must be >= 1")
        config.max_turns = data["max_turns"]
    config.native_tool_calling = data.get("native_tool_calling", False)
    config.cli_path = data.get("cli_path", DEFAULT_CLI_PATH)
    config.verbose = data.get("verbose", False)
    config.timezone = data.get("timezone", "")

    if "models" in data:
        config.model, config.providers = _parse_models(data["models"], source)
    if "session" in data:
        config.session = _parse_session(data["session"], source)
    if "cmds" in data:
        config.cmds = _parse_cmds(data["cmds"], source)
    if "mcp_servers" in data:
        _validate_mcp_server_configs(data["mcp_servers"], source)
        config.mcp_servers = data["mcp_servers"]
    registered = data.get("skills", {}).get("registered", {})
    if not isinstance(registered, dict):
        raise ConfigError(f"{source}: skills.registered must be a table")
    for name, path in registered.items():
        if not isinstance(path, str):
            raise ConfigError(f"{source}: skills.registered.{name} must be a string")
    config.registered_skills = dict(registered)
    return config


def load_config(config_dir: Path | None = None, path: Path | None = None) -> Config:
    """Load <config_dir>/config.toml, returning defaults when the file is absent."""
    if config_dir is None:
        config_dir = resolve_config_dir()
    config_dir = Path(config_dir)
    if path is None:
        path = config_dir / CONFIG_FILENAME

    if not path.is_file():
        return Config(config_dir=config_dir)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}")
    except OSError as e:
        raise ConfigError(f"{path}: cannot read config: {e}")

    return parse_config(data, config_dir, str(path))
