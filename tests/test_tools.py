"""Tests for tool descriptors, argument mapping and ToolRouter dispatch."""

import json
import types
from pathlib import Path

import pytest

from yaocc import tools
from yaocc.config import CmdConfig, Config
from yaocc.errors import ConfigError
from yaocc.skills import Skill
from yaocc.tools import (
    EXEC_TOOL,
    GENERIC,
    SKILL_TOOLS,
    Action,
    Param,
    ToolArgumentError,
    ToolRouter,
    build_command_args,
    build_tools,
    substitute_placeholders,
    validate_tool_table,
)


def _skill(name, description="", body=""):
    return Skill(
        name=name,
        description=description or f"{name} skill",
        body=body or f"# {name}\nusage docs",
        path=Path(f"/skills/{name}/SKILL.md"),
    )


def _catalog(*names):
    return {n: _skill(n) for n in names}


class _FakeProvider:
    def __init__(self, name="telegram"):
        self._name = name

    def name(self):
        return self._name

    def send_message(self, target_id, text):
        pass

    def system_prompt_instruction(self):
        return ""


@pytest.fixture
def calls(monkeypatch):
    """Capture argv handed to the agent's own CLI instead of running it."""
    recorded = []

    def fake_run_argv(argv, cwd=None, timeout=30):
        recorded.append(list(argv))
        return "ran: " + " ".join(argv[1:])

    monkeypatch.setattr(tools, "run_argv", fake_run_argv)
    return recorded


@pytest.fixture
def router(tmp_path):
    config = Config(config_dir=tmp_path, cli_path="/opt/bin/yaocc")
    skills = _catalog("cron", "file", "fetch", "websearch", "prompt", "skills", "model")
    return ToolRouter(config, skills)


# ---------------------------------------------------------------------------
# Tool table
# ---------------------------------------------------------------------------


class TestToolTable:
    def test_default_table_is_valid(self):
        validate_tool_table(SKILL_TOOLS)

    def test_missing_builtin_fails_fast(self):
        table = dict(SKILL_TOOLS)
        del table["cron"]
        with pytest.raises(ConfigError, match="cron"):
            validate_tool_table(table)

    def test_duplicate_param_rejected(self):
        table = dict(SKILL_TOOLS)
        table["fetch"] = (
            Action("", "", (Param("url", "string", "a"), Param("url", "string", "b"))),
        )
        with pytest.raises(ConfigError, match="duplicate parameter"):
            validate_tool_table(table)

    def test_boolean_needs_flag(self):
        table = dict(SKILL_TOOLS)
        table["fetch"] = (Action("", "", (Param("quiet", "boolean", "q"),)),)
        with pytest.raises(ConfigError, match="needs a flag"):
            validate_tool_table(table)

    def test_router_validates_on_construction(self, tmp_path):
        table = dict(SKILL_TOOLS)
        del table["file"]
        with pytest.raises(ConfigError):
            ToolRouter(Config(config_dir=tmp_path), {}, table=table)


# ---------------------------------------------------------------------------
# Argument vectors
# ---------------------------------------------------------------------------


def _action(skill, name):
    return next(a for a in SKILL_TOOLS[skill] if a.name == name)


class TestBuildCommandArgs:
    def test_cron_add_full(self):
        argv = build_command_args(
            "cron",
            _action("cron", "add"),
            {
                "name": "daily",
                "schedule": "0 9 * * *",
                "prompt": "say hi",
                "use_history": True,
                "target_provider": "telegram",
                "target_id": "42",
            },
        )
        assert argv == [
            "cron", "add",
            "--name", "daily",
            "--schedule", "0 9 * * *",
            "--prompt", "say hi",
            "--use-history",
            "--target-provider", "telegram",
            "--target-id", "42",
        ]

    def test_cron_add_omits_false_and_empty(self):
        argv = build_command_args(
            "cron",
            _action("cron", "add"),
            {"name": "n", "schedule": "* * * * *", "use_history": False, "script": ""},
        )
        assert argv == ["cron", "add", "--name", "n", "--schedule", "* * * * *"]

    def test_cron_add_missing_required(self):
        with pytest.raises(ToolArgumentError, match="schedule"):
            build_command_args("cron", _action("cron", "add"), {"name": "n"})

    def test_cron_run_index_integer(self):
        assert build_command_args("cron", _action("cron", "run"), {"index": 2.0}) == [
            "cron", "run", "2",
        ]

    def test_cron_run_rejects_non_integer(self):
        with pytest.raises(ToolArgumentError):
            build_command_args("cron", _action("cron", "run"), {"index": "two"})

    def test_cron_remove_positional(self):
        assert build_command_args("cron", _action("cron", "remove"), {"name": "x"}) == [
            "cron", "remove", "x",
        ]

    def test_file_write_order(self):
        argv = build_command_args(
            "file", _action("file", "write"), {"content": "hello", "path": "a.txt"}
        )
        assert argv == ["file", "write", "a.txt", "hello"]

    def test_file_run_array_args(self):
        argv = build_command_args(
            "file", _action("file", "run"), {"path": "s.py", "args": ["1", 2]}
        )
        assert argv == ["file", "run", "s.py", "1", "2"]

    def test_file_list_optional_path(self):
        assert build_command_args("file", _action("file", "list"), {}) == ["file", "list"]

    @pytest.mark.parametrize(
        "skill,key,value",
        [("fetch", "url", "https://x.org"), ("websearch", "query", "q"), ("prompt", "message", "m")],
    )
    def test_single_argument_skills(self, skill, key, value):
        assert build_command_args(skill, SKILL_TOOLS[skill][0], {key: value}) == [skill, value]

    def test_skills_run_invokes_custom_skill(self):
        argv = build_command_args(
            "skills", _action("skills", "run"), {"name": "weather", "args": "--city 'New York'"}
        )
        assert argv == ["weather", "--city", "New York"]

    def test_skills_register(self):
        argv = build_command_args(
            "skills", _action("skills", "register"), {"name": "w", "path": "w.sh"}
        )
        assert argv == ["skills", "register", "w", "w.sh"]


# ---------------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------------


class TestPlaceholders:
    def test_only_tokens_resolve_exactly(self):
        args = {"p": "CURRENT_PROVIDER", "t": "CURRENT_SESSION_ID"}
        assert substitute_placeholders(args, "telegram", "123") == {
            "p": "telegram",
            "t": "123",
        }

    def test_array_elements_and_nesting(self):
        args = {"args": ["to CURRENT_SESSION_ID", 5], "nested": {"x": "CURRENT_PROVIDER"}}
        assert substitute_placeholders(args, "slack", "c9") == {
            "args": ["to c9", 5],
            "nested": {"x": "slack"},
        }

    def test_idempotent(self):
        args = {"a": "CURRENT_PROVIDER/CURRENT_SESSION_ID", "b": True}
        once = substitute_placeholders(args, "p", "t")
        assert substitute_placeholders(once, "p", "t") == once
        assert once == {"a": "p/t", "b": True}

    def test_unknown_provider_name(self, router, calls):
        router.dispatch(
            "yaocc_cron_add",
            json.dumps({"name": "n", "schedule": "s", "target_provider": "CURRENT_PROVIDER"}),
            provider=None,
            target_id="77",
        )
        assert calls[0][-2:] == ["--target-provider", "unknown"]


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


class TestBuildTools:
    def test_usage_and_structured_tools(self, tmp_path):
        config = Config(config_dir=tmp_path)
        names = [t.name for t in build_tools(_catalog("cron", "fetch"), config)]
        assert names == [
            "yaocc_cron_usage",
            "yaocc_cron_list",
            "yaocc_cron_add",
            "yaocc_cron_remove",
            "yaocc_cron_run",
            "yaocc_fetch_usage",
            "yaocc_fetch",
        ]

    def test_generic_skill_gets_args_param(self, tmp_path):
        tools_ = build_tools(_catalog("model"), Config(config_dir=tmp_path))
        generic = tools_[1]
        assert generic.name == "yaocc_model"
        assert list(generic.parameters["properties"]) == ["args"]

    def test_required_subset_in_schema(self, tmp_path):
        tools_ = build_tools(_catalog("cron"), Config(config_dir=tmp_path))
        add = next(t for t in tools_ if t.name == "yaocc_cron_add")
        assert add.parameters["required"] == ["name", "schedule"]
        assert add.parameters["properties"]["use_history"]["type"] == "boolean"

    def test_custom_skills_not_exposed(self, tmp_path):
        assert build_tools(_catalog("weather"), Config(config_dir=tmp_path)) == []

    def test_exec_disabled_by_default(self, tmp_path):
        names = [t.name for t in build_tools({}, Config(config_dir=tmp_path))]
        assert EXEC_TOOL not in names

    def test_exec_enabled(self, tmp_path):
        config = Config(config_dir=tmp_path, cmds=[CmdConfig(name="exec")])
        names = [t.name for t in build_tools(_catalog("exec"), config)]
        assert names == [EXEC_TOOL]

    def test_disabled_command_hidden(self, tmp_path):
        config = Config(config_dir=tmp_path, cmds=[CmdConfig(name="cron", enabled=False)])
        assert build_tools(_catalog("cron"), config) == []


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_usage_returns_body_verbatim(self, router, calls):
        router.skills["cron"] = _skill("cron", body="## cron\n\nExact text.")
        assert router.dispatch("yaocc_cron_usage", "{}") == "## cron\n\nExact text."
        assert calls == []

    def test_usage_for_custom_skill(self, router):
        router.skills["tool_x"] = _skill("tool_x", body="X docs")
        assert router.dispatch("yaocc_tool_x_usage", "{}") == "X docs"

    def test_usage_suffix_needs_prefix(self, router):
        router.skills["tool_x"] = _skill("tool_x", body="X docs")
        assert router.dispatch("tool_x_usage", "{}") == "error: unknown tool: 'tool_x_usage'"

    def test_usage_unknown_skill(self, router):
        assert router.dispatch("yaocc_nope_usage", "{}").startswith("error:")

    def test_structured_runs_own_cli(self, router, calls):
        result = router.dispatch("yaocc_file_read", json.dumps({"path": "notes.md"}))
        assert calls == [["/opt/bin/yaocc", "file", "read", "notes.md"]]
        assert result == "ran: file read notes.md"

    def test_structured_missing_argument(self, router, calls):
        result = router.dispatch("yaocc_file_read", "{}")
        assert result.startswith("error: missing required argument")
        assert calls == []

    def test_generic_args_forwarded(self, router, calls):
        router.dispatch("yaocc_model", json.dumps({"args": "use openai/gpt-4o"}))
        assert calls == [["/opt/bin/yaocc", "model", "use", "openai/gpt-4o"]]

    def test_custom_skill_generic(self, router, calls):
        router.skills["weather"] = _skill("weather")
        router.dispatch("yaocc_weather", json.dumps({"args": "today"}))
        assert calls == [["/opt/bin/yaocc", "weather", "today"]]

    def test_invalid_json(self, router):
        result = router.dispatch("yaocc_file_read", "{not json")
        assert result.startswith("error: invalid JSON in tool arguments")

    def test_non_object_arguments(self, router):
        assert router.dispatch("yaocc_file_read", "[1, 2]").startswith("error:")

    def test_unknown_tool(self, router):
        assert router.dispatch("frobnicate", "{}") == "error: unknown tool: 'frobnicate'"

    def test_disabled_command(self, tmp_path, calls):
        config = Config(config_dir=tmp_path, cmds=[CmdConfig(name="file", enabled=False)])
        router = ToolRouter(config, _catalog("file"))
        result = router.dispatch("yaocc_file_read", json.dumps({"path": "x"}))
        assert result == "error: command 'file' is disabled"
        assert calls == []

    def test_placeholders_substituted(self, router, calls):
        router.dispatch(
            "yaocc_cron_add",
            json.dumps(
                {
                    "name": "n",
                    "schedule": "s",
                    "target_provider": "CURRENT_PROVIDER",
                    "target_id": "CURRENT_SESSION_ID",
                }
            ),
            provider=_FakeProvider("telegram"),
            target_id="12345",
        )
        assert calls[0][-4:] == ["--target-provider", "telegram", "--target-id", "12345"]


class TestExec:
    def _router(self, tmp_path, **cmd):
        config = Config(config_dir=tmp_path, cmds=[CmdConfig(name="exec", **cmd)])
        return ToolRouter(config, {})

    def test_disabled_by_default(self, tmp_path):
        router = ToolRouter(Config(config_dir=tmp_path), {})
        result = router.dispatch(EXEC_TOOL, json.dumps({"command": "echo hi"}))
        assert result == "error: command 'exec' is disabled"

    def test_runs_in_config_dir(self, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        result = self._router(tmp_path).dispatch(EXEC_TOOL, json.dumps({"command": "ls"}))
        assert "marker.txt" in result

    def test_blacklisted_command_is_text(self, tmp_path):
        result = self._router(tmp_path).dispatch(
            EXEC_TOOL, json.dumps({"command": "sudo reboot"})
        )
        assert result.startswith("error: command denied")

    def test_missing_command(self, tmp_path):
        result = self._router(tmp_path).dispatch(EXEC_TOOL, "{}")
        assert result == "error: missing required argument: command"


class TestRemoteDispatch:
    def test_forwards_to_manager(self, tmp_path):
        seen = []

        class FakeMcp:
            def tool_set(self):
                return [], {}

            def call_tool(self, server, tool, arguments):
                seen.append((server, tool, arguments))
                return ("remote says hi", False)

        router = ToolRouter(Config(config_dir=tmp_path), {}, mcp=FakeMcp())
        result = router.dispatch(
            "mcp__fs__read_file",
            json.dumps({"path": "CURRENT_SESSION_ID.txt"}),
            target_id="s9",
            routes={"mcp__fs__read_file": ("fs", "read.file")},
        )
        assert result == "remote says hi"
        assert seen == [("fs", "read.file", {"path": "s9.txt"})]

    def test_remote_tool_ending_in_usage(self, tmp_path):
        seen = []

        class FakeMcp:
            def tool_set(self):
                return [], {}

            def call_tool(self, server, tool, arguments):
                seen.append((server, tool, arguments))
                return ("42% used", False)

        router = ToolRouter(Config(config_dir=tmp_path), {}, mcp=FakeMcp())
        result = router.dispatch(
            "mcp__srv__disk_usage",
            "{}",
            target_id="t",
            routes={"mcp__srv__disk_usage": ("srv", "disk_usage")},
        )
        assert result == "42% used"
        assert seen == [("srv", "disk_usage", {})]

    def test_error_text_passed_through(self, tmp_path):
        mcp = types.SimpleNamespace(
            tool_set=lambda: ([], {}),
            call_tool=lambda s, t, a: ("error: bad input", True),
        )
        router = ToolRouter(Config(config_dir=tmp_path), {}, mcp=mcp)
        assert router.dispatch("mcp__fs__x", "{}") == "error: bad input"

    def test_without_servers(self, tmp_path):
        router = ToolRouter(Config(config_dir=tmp_path), {})
        assert router.dispatch("mcp__fs__x", "{}").startswith("error: no MCP servers")


class TestCommandLine:
    def test_runs_yaocc_command(self, router, calls):
        router.run_command_line('yaocc file write a.txt "hello world"')
        assert calls == [["/opt/bin/yaocc", "file", "write", "a.txt", "hello world"]]

    def test_placeholders_in_command_line(self, router, calls):
        router.run_command_line(
            "yaocc cron add --target-provider CURRENT_PROVIDER --target-id CURRENT_SESSION_ID",
            provider=_FakeProvider("discord"),
            target_id="c1",
        )
        assert calls[0][-4:] == ["--target-provider", "discord", "--target-id", "c1"]

    def test_rejects_other_programs(self, router, calls):
        assert router.run_command_line("rm -rf /").startswith("error:")
        assert calls == []

    def test_exec_goes_through_policy(self, router, calls):
        result = router.run_command_line("yaocc exec ls -la")
        assert result == "error: command 'exec' is disabled"
        assert calls == []

    def test_generic_table_entry(self):
        assert SKILL_TOOLS["chat"] == GENERIC
