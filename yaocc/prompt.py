"""System prompt assembly from the context files in the config directory."""

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .messaging import MEDIA_MARKERS
from .skills import Skill, format_skill_manifest
from .tools import CLI_PREFIX, PROVIDER_PLACEHOLDER, SESSION_PLACEHOLDER

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILE_CHARS = 10_000
DEFAULT_SOUL = "You are a helpful assistant."
DEFAULT_TOOLS_INSTRUCTIONS = "Usage instructions not found."


def current_time(timezone: str = "") -> datetime:
    """Aware "now" in the configured IANA zone, or the local zone."""
    if timezone:
        try:
            return datetime.now(ZoneInfo(timezone))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"unknown timezone {timezone!r}, using local time")
    return datetime.now().astimezone()


def read_context_file(path: Path, default: str = "") -> str:
    """Read a context file, capped at MAX_CONTEXT_FILE_CHARS."""
    try:
        content = path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return default
    if not content:
        return default
    if len(content) > MAX_CONTEXT_FILE_CHARS:
        content = (
            content[:MAX_CONTEXT_FILE_CHARS]
            + f"\n[truncated: {path.name} exceeds {MAX_CONTEXT_FILE_CHARS} character limit]"
        )
    return content


def load_memory(config_dir: Path, today: date | None = None) -> str:
    """Long-term memory plus yesterday's and today's daily notes."""
    today = today or date.today()
    yesterday = today - timedelta(days=1)
    sections = []

    memory = read_context_file(config_dir / "MEMORY.md")
    sections.append(f"## Long-Term Memory (MEMORY.md)\n{memory or '[Empty]'}")
    for label, day in (("Yesterday's", yesterday), ("Today's", today)):
        rel = f"memory/{day.isoformat()}.md"
        notes = read_context_file(config_dir / rel)
        sections.append(f"## {label} Context ({rel})\n{notes or '[Empty]'}")
    return "\n\n".join(sections)


def build_base_prompt(config_dir: Path, now: datetime | None = None) -> str:
    """Date/time, rules, identity, soul, user profile and memory.

    Used on its own for stateless task runs where no tools are available.
    """
    now = now or current_time()
    parts = [f"Current Date & Time: {now.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}"]
    for filename, default in (
        ("AGENTS.md", ""),
        ("IDENTITY.md", ""),
        ("SOUL.md", DEFAULT_SOUL),
        ("USER.md", ""),
    ):
        text = read_context_file(config_dir / filename, default)
        if text:
            parts.append(text)
    parts.append(load_memory(config_dir, now.date()))
    return "\n\n".join(parts) + "\n\n"


def _tool_section(config_dir: Path, native: bool) -> str:
    if native:
        return (
            "## Tool Execution\n"
            "You have access to native tools. ALWAYS use the provided tool-calling "
            "capability to execute your actions instead of raw bash code blocks."
        )
    instructions = read_context_file(
        config_dir / "TOOLS.md", DEFAULT_TOOLS_INSTRUCTIONS
    )
    return (
        "## Tool Execution\n"
        f"You MUST use bash code blocks starting with `{CLI_PREFIX}` to execute tools:\n"
        f"{instructions}"
    )


def _media_section() -> str:
    labels = {
        "image": "Image",
        "audio": "Audio",
        "video": "Video",
        "document": "Document",
        "base64_image": "Base64 image",
    }
    lines = [
        "## Media & Special Outputs",
        "You can send media files by outputting a specific prefix followed by "
        "the URL or local path.",
    ]
    for kind, marker in MEDIA_MARKERS.items():
        lines.append(f"- {labels[kind]}: `{marker}<url_or_path>`")
    lines.append(f"Example: `{MEDIA_MARKERS['image']}https://example.com/cat.jpg`")
    lines.append(
        f"If you download a file using `{CLI_PREFIX} fetch`, you can send it "
        "using the local path."
    )
    return "\n".join(lines)


def _session_section(provider, target_id: str) -> str:
    if provider is None and not target_id:
        return ""
    lines = ["## Current Session Context"]
    if provider is not None:
        lines.append(f"You are currently communicating in a '{provider.name()}' session.")
    lines.append(
        "When scheduling jobs or tasks for the current user, use "
        f"'{PROVIDER_PLACEHOLDER}' and '{SESSION_PLACEHOLDER}' as placeholders "
        "for target provider/id. They will be automatically replaced with these "
        "session values by the system."
    )
    if provider is not None:
        instruction = provider.system_prompt_instruction()
        if instruction:
            lines.append("")
            lines.append(instruction)
    return "\n".join(lines)


def build_system_prompt(
    config_dir: Path,
    skills: dict[str, Skill],
    native: bool,
    provider=None,
    target_id: str = "",
    now: datetime | None = None,
) -> str:
    sections = [
        build_base_prompt(config_dir, now).rstrip(),
        format_skill_manifest(skills, native),
        _tool_section(config_dir, native),
        _media_section(),
    ]
    session = _session_section(provider, target_id)
    if session:
        sections.append(session)
    return "\n\n".join(sections) + "\n"
