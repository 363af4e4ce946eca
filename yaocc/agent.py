"""ReAct orchestration loop, stateless task runs and the command-line entry point."""

import argparse
import enum
import json
import logging
import re
import sys
import threading
import time
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import Config, ModelConfig, load_config, resolve_config_dir
from .errors import AgentError, ConfigError, MaxTurnsError
from .llm import LLMClient, Message, ToolCall, ToolDescriptor
from .mcp_client import McpManager
from .prompt import build_base_prompt, build_system_prompt, current_time
from .session import DEFAULT_SESSION, SessionStore
from .skills import Skill, discover_skills, format_skill_manifest
from .summary import Summarizer
from .tools import CLI_PREFIX, ToolRouter

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000

_encoder = tiktoken.get_encoding("cl100k_base")

# ``` fences with an optional bash/sh tag.
_COMMAND_BLOCK_RE = re.compile(r"```(?:bash|sh)?\s+(.*?)```", re.DOTALL)


class ToolMode(enum.Enum):
    NATIVE = "native"  # structured tool calls from the backend
    TEXT = "text"  # fenced command blocks embedded in the reply


def select_tool_mode(config: Config, model: ModelConfig | None) -> ToolMode:
    """Native mode needs the global switch and no per-model opt-out."""
    if not config.native_tool_calling:
        return ToolMode.TEXT
    if model is not None and model.tools is False:
        return ToolMode.TEXT
    return ToolMode.NATIVE


def parse_commands(content: str) -> list[str]:
    """Return the lines of fenced blocks that invoke the agent's own CLI.

    Each line of a block is a separate command; other lines are ignored.
    """
    commands = []
    for match in _COMMAND_BLOCK_RE.finditer(content or ""):
        for line in match.group(1).splitlines():
            cmd = line.strip()
            if cmd.startswith(CLI_PREFIX):
                commands.append(cmd)
    return commands


def estimate_tokens(messages: list[Message], tools: list[ToolDescriptor] | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.content or ""
        for tc in m.tool_calls:
            content += tc.name + (tc.arguments or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps([t.to_api() for t in tools])))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


class Agent:
    """Runs conversations for any number of sessions.

    One instance owns the model client, the remote tool servers and the
    transcript store. Summarization passes run on daemon threads.
    """

    def __init__(
        self,
        config: Config,
        client,
        *,
        model: ModelConfig | None = None,
        store: SessionStore | None = None,
        skills: dict[str, Skill] | None = None,
        mcp: McpManager | None = None,
        summary_client=None,
        verbose: bool | None = None,
    ):
        self.config = config
        self.client = client
        self.model = model
        self.store = store or SessionStore(config.sessions_dir)
        self.skills = skills if skills is not None else {}
        self.mcp = mcp
        self.verbose = config.verbose if verbose is None else verbose
        self.mode = select_tool_mode(config, model)
        self.router = ToolRouter(config, self.skills, mcp)

        self.summarizer: Summarizer | None = None
        if config.session.summarize:
            self.summarizer = Summarizer(
                self.store,
                summary_client or client,
                strategy=config.session.summary_strategy,
            )
        self._background: list[threading.Thread] = []
        self._background_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, verbose: bool | None = None) -> "Agent":
        """Build a fully wired agent: model client, skills, MCP servers."""
        verbose = config.verbose if verbose is None else verbose
        provider_cfg, model = config.resolve_model()
        client = LLMClient(provider_cfg, model, verbose=verbose)

        summary_client = None
        if config.session.summarize and config.session.summary_model:
            try:
                sp, sm = config.resolve_model(config.session.summary_model)
                summary_client = LLMClient(sp, sm, verbose=verbose)
            except ConfigError as e:
                logger.warning(f"summary model unavailable, using main model: {e}")

        skills = discover_skills(config.config_dir, config.registered_skills)
        logger.info(f"loaded {len(skills)} skills: {sorted(skills)}")

        mcp = None
        if config.mcp_servers:
            mcp = McpManager(config.mcp_servers, verbose=verbose)
            mcp.start()

        return cls(
            config,
            client,
            model=model,
            skills=skills,
            mcp=mcp,
            summary_client=summary_client,
            verbose=verbose,
        )

    @property
    def native(self) -> bool:
        return self.mode is ToolMode.NATIVE

    def close(self) -> None:
        if self.mcp is not None:
            self.mcp.close()

    # --- Conversation loop ---

    def run(self, session_id: str, provider, target_id: str, user_input: str) -> str:
        """Answer one user message, running tools until a final reply.

        Raises LLMError when the backend fails and MaxTurnsError when the
        turn budget runs out without a final answer.
        """
        try:
            history = self.store.load_history(session_id)
        except OSError as e:
            logger.warning(f"failed to load history for {session_id!r}: {e}")
            history = []

        system_prompt = build_system_prompt(
            self.config.config_dir,
            self.skills,
            self.native,
            provider=provider,
            target_id=target_id,
            now=current_time(self.config.timezone),
        )
        messages = [Message(role="system", content=system_prompt), *history]
        messages.append(Message(role="user", content=user_input))
        self._persist(session_id, "user", user_input)

        budget = self.config.turn_budget(self.model)
        for turn in range(1, budget + 1):
            tools, routes = self.router.tool_set() if self.native else ([], {})
            if self.verbose:
                fmt.turn_header(turn, budget, estimate_tokens(messages, tools))

            t0 = time.monotonic()
            text, tool_calls = self.client.chat(messages, tools or None)
            if self.verbose:
                fmt.llm_timing(time.monotonic() - t0, len(tool_calls))

            if self.native and tool_calls:
                messages.append(
                    Message(role="assistant", content=text, tool_calls=list(tool_calls))
                )
                for tc in tool_calls:
                    messages.append(self.handle_tool_call(tc, provider, target_id, routes))
                continue

            if not self.native:
                commands = parse_commands(text)
                if commands:
                    messages.append(Message(role="assistant", content=text))
                    messages.append(
                        Message(
                            role="tool",
                            content=self.handle_commands(commands, provider, target_id),
                        )
                    )
                    continue

            self._persist(session_id, "assistant", text)
            self.schedule_summary(session_id)
            if self.verbose:
                fmt.completion(turn, "ok")
            return text

        self.schedule_summary(session_id)
        if self.verbose:
            fmt.completion(budget, "max_turns")
        raise MaxTurnsError(budget)

    def handle_tool_call(
        self,
        tool_call: ToolCall,
        provider,
        target_id: str,
        routes: dict[str, tuple[str, str]] | None = None,
    ) -> Message:
        """Execute one native tool call and return its tool-result message."""
        name = tool_call.name
        if self.verbose:
            pretty = tool_call.arguments or ""
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(name, pretty)

        t0 = time.monotonic()
        try:
            result = self.router.dispatch(
                name, tool_call.arguments, provider, target_id, routes
            )
        except Exception as e:
            result = f"error: {e}"
        elapsed = time.monotonic() - t0

        if self.verbose:
            if result.startswith("error:"):
                fmt.tool_error(name, result)
            else:
                fmt.tool_result(name, elapsed, result[:500])

        return Message(
            role="tool", content=result, tool_call_id=tool_call.id, name=name
        )

    def handle_commands(self, commands: list[str], provider, target_id: str) -> str:
        """Run text-mode commands in order and aggregate their output."""
        parts = []
        for cmd in commands:
            if self.verbose:
                fmt.text_command(cmd)
            try:
                out = self.router.run_command_line(cmd, provider, target_id)
            except Exception as e:
                out = f"error: {e}"
            parts.append(f"Command: {cmd}\nOutput:\n{out}\n")
        return "".join(parts)

    # --- Stateless tasks ---

    def run_task(self, session_id: str, instruction: str, context_text: str = "") -> str:
        """One model call without history or tools, for scheduled jobs.

        Records a single audit entry in the session log.
        """
        session_id = session_id or DEFAULT_SESSION
        now = current_time(self.config.timezone)
        system_prompt = (
            build_base_prompt(self.config.config_dir, now)
            + format_skill_manifest(self.skills, native=False, full_body=True)
            + "\n"
        )

        task_prompt = f"[TASK EXECUTION: {now.isoformat(timespec='seconds')}]\n"
        if context_text:
            task_prompt += f"\nCONTEXT/OUTPUT:\n{context_text}\n\n"
            task_prompt += (
                "Analyze the context above and execute the following instruction "
                "based on it.\n"
            )
        else:
            task_prompt += "Execute the following instruction.\n"
        task_prompt += f"\nINSTRUCTION:\n{instruction}"

        response, _ = self.client.chat(
            [
                Message(role="system", content=system_prompt),
                Message(role="user", content=task_prompt),
            ],
            None,
        )
        self._persist(session_id, "system", f"TASK [{instruction}] Output:\n{response}")
        return response

    # --- Background work ---

    def schedule_summary(self, session_id: str) -> threading.Thread | None:
        """Start a summarization pass without waiting for it."""
        if self.summarizer is None:
            return None
        thread = threading.Thread(
            target=self._summary_worker,
            args=(session_id,),
            name=f"yaocc-summary-{session_id}",
            daemon=True,
        )
        with self._background_lock:
            self._background = [t for t in self._background if t.is_alive()]
            self._background.append(thread)
        thread.start()
        return thread

    def wait_for_background(self, timeout: float | None = None) -> None:
        with self._background_lock:
            threads = list(self._background)
        for t in threads:
            t.join(timeout)

    def _summary_worker(self, session_id: str) -> None:
        try:
            self.summarizer.update(session_id)
        except Exception:
            logger.exception(f"summary pass for session {session_id!r} failed")

    def _persist(self, session_id: str, role: str, content: str) -> None:
        try:
            self.store.append(session_id, role, content)
        except OSError as e:
            logger.warning(f"failed to append to session {session_id!r}: {e}")


# --- Command line ---


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="yaocc-agent",
        description="Ask the agent one question and print its answer.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Question or instruction (read from stdin when omitted).",
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="Configuration directory (default: $YAOCC_CONFIG_DIR, ~/config/.yaocc, cwd).",
    )
    parser.add_argument(
        "--session",
        default="cli",
        help="Session id whose history is used and extended (default: cli).",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model reference <provider>/<model id>, overriding models.model.",
    )
    parser.add_argument(
        "--task",
        action="store_true",
        help="Run as a stateless task: one model call, no history, no tools.",
    )
    parser.add_argument(
        "--context",
        default="",
        help="Context text handed to a --task run.",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=None,
        help="Override the global turn budget (a per-model max_turns still wins).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Trace turns and tool calls on stderr.",
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", help="Force ANSI color on stderr."
    )
    color_group.add_argument(
        "--no-color", action="store_true", help="Disable ANSI color on stderr."
    )
    parser.add_argument(
        "--version", action="store_true", help="Print version and exit."
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("yaocc")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    fmt.init(color=args.color, no_color=args.no_color)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    question = args.question
    if question is None:
        if sys.stdin.isatty():
            parser.error("question is required")
        question = sys.stdin.read().strip()
    if not question:
        parser.error("question is empty")

    agent = None
    try:
        config_dir = Path(args.config_dir) if args.config_dir else resolve_config_dir()
        config = load_config(config_dir)
        if args.model:
            config.model = args.model
        if args.max_turns is not None:
            if args.max_turns < 1:
                parser.error("--max-turns must be >= 1")
            config.max_turns = args.max_turns
        if args.verbose:
            config.verbose = True

        agent = Agent.from_config(config)
        if args.task:
            answer = agent.run_task(args.session, question, args.context)
        else:
            answer = agent.run(args.session, None, args.session, question)
        print(answer)
    except MaxTurnsError as e:
        fmt.error(str(e))
        sys.exit(2)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    finally:
        if agent is not None:
            agent.wait_for_background(timeout=90)
            agent.close()


if __name__ == "__main__":
    main()
