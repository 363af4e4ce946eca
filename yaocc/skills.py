"""Skill discovery from SKILL.md files and the <available_skills> manifest."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from xml.sax.saxutils import escape

from .config import resolve_path

logger = logging.getLogger(__name__)

MAX_SKILL_BODY_CHARS = 20_000

# Subcommands of the agent's own command-line entry point.
BUILTIN_COMMANDS = (
    "init",
    "chat",
    "cron",
    "model",
    "file",
    "fetch",
    "websearch",
    "skills",
    "prompt",
    "exec",
)

# Skill directory names that document a built-in command under another name.
SKILL_ALIASES = {
    "cron-manager": "cron",
    "cron_manager": "cron",
    "file-manager": "file",
    "file_manager": "file",
}

_FRONTMATTER_KEYS = ("name", "description", "homepage")


@dataclass
class Skill:
    name: str  # canonical name (aliases resolved)
    description: str
    body: str  # markdown after the frontmatter
    path: Path  # SKILL.md location
    homepage: str = ""

    @property
    def is_builtin(self) -> bool:
        return self.name in BUILTIN_COMMANDS


def canonical_skill_name(name: str) -> str:
    return SKILL_ALIASES.get(name, name)


def parse_frontmatter(text: str) -> dict | str:
    """Parse YAML-style frontmatter from SKILL.md content.

    Returns a dict with 'name', 'description', 'homepage' (when present)
    and 'body' keys on success, or an error string on failure.

    Supports:
    - Plain scalar values: key: value
    - Quoted scalar values: key: "value" or key: 'value'
    - Multiline folded: indented continuation lines joined with spaces
    - Multiline literal: key: | followed by indented block, newlines preserved
    """
    lines = text.split("\n")

    if not lines or lines[0].strip() != "---":
        return "missing opening '---' delimiter"

    end_idx = None
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            end_idx = i
            break
    if end_idx is None:
        return "missing closing '---' delimiter"

    fm_lines = lines[1:end_idx]
    body = "\n".join(lines[end_idx + 1 :]).strip()

    result: dict = {"body": body}

    i = 0
    while i < len(fm_lines):
        line = fm_lines[i]

        if not line.strip() or line[0] in (" ", "\t"):
            i += 1
            continue

        colon_idx = line.find(":")
        if colon_idx < 0:
            i += 1
            continue

        key = line[:colon_idx].strip()
        raw_value = line[colon_idx + 1 :].strip()

        if key not in _FRONTMATTER_KEYS:
            # Unknown key (metadata, etc.): skip it with its nested lines
            i += 1
            while i < len(fm_lines) and fm_lines[i] and fm_lines[i][0] in (" ", "\t"):
                i += 1
            continue

        if raw_value in ("|", ">"):
            joiner = "\n" if raw_value == "|" else " "
            block_lines = []
            i += 1
            while i < len(fm_lines) and fm_lines[i] and fm_lines[i][0] in (" ", "\t"):
                block_lines.append(fm_lines[i].strip())
                i += 1
            result[key] = joiner.join(block_lines)
            continue

        if raw_value and raw_value[0] in ('"', "'"):
            quote_char = raw_value[0]
            if len(raw_value) < 2 or raw_value[-1] != quote_char:
                return f"missing closing {quote_char} for {key}"
            inner = raw_value[1:-1].replace(f"\\{quote_char}", quote_char)
            result[key] = inner
            i += 1
            continue

        value = raw_value
        i += 1
        while i < len(fm_lines) and fm_lines[i] and fm_lines[i][0] in (" ", "\t"):
            value += " " + fm_lines[i].strip()
            i += 1
        result[key] = value

    if not result.get("name"):
        return "missing 'name' field"
    result.setdefault("description", "")
    return result


def load_skill(path: Path) -> Skill | None:
    """Load one SKILL.md. Logs and returns None on any problem."""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"failed to read {path}: {e}")
        return None

    parsed = parse_frontmatter(content)
    if isinstance(parsed, str):
        logger.warning(f"failed to parse SKILL.md frontmatter in {path}: {parsed}")
        return None

    body = parsed["body"]
    if len(body) > MAX_SKILL_BODY_CHARS:
        body = body[:MAX_SKILL_BODY_CHARS] + "\n[truncated]"
    return Skill(
        name=canonical_skill_name(parsed["name"]),
        description=parsed["description"],
        body=body,
        path=path,
        homepage=parsed.get("homepage", ""),
    )


def _find_skill_files(root: Path) -> list[Path]:
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            if filename.lower() == "skill.md":
                found.append(Path(dirpath) / filename)
    return found


def discover_skills(
    config_dir: Path, registered: dict[str, str] | None = None
) -> dict[str, Skill]:
    """Scan <config_dir>/skills and registered skill paths for SKILL.md files.

    Returns {name: Skill}. First-seen name wins.
    """
    roots = [config_dir / "skills"]
    for path_str in (registered or {}).values():
        p = resolve_path(config_dir, path_str)
        roots.append(p if p.is_dir() else p.parent)

    catalog: dict[str, Skill] = {}
    for root in roots:
        if not root.is_dir():
            continue
        for skill_md in _find_skill_files(root):
            skill = load_skill(skill_md)
            if skill is None:
                continue
            if skill.name in catalog:
                logger.debug(f"duplicate skill {skill.name!r} at {skill_md}, skipped")
                continue
            catalog[skill.name] = skill
    return catalog


def format_skill_manifest(
    skills: dict[str, Skill], native: bool, full_body: bool = False
) -> str:
    """Render the <available_skills> block for the system prompt.

    In native mode built-in skills are omitted: they reach the model as
    structured tool descriptors instead.
    """
    lines = ["Available Skills:", "<available_skills>"]
    for skill in skills.values():
        if native and skill.is_builtin:
            continue
        if full_body:
            lines.append(f"\n### {skill.name}\n{skill.description}\n{skill.body}\n")
            continue
        lines.append("  <skill>")
        lines.append(f"    <name>{escape(skill.name)}</name>")
        lines.append(f"    <description>{escape(skill.description)}</description>")
        lines.append(f"    <location>{escape(str(skill.path))}</location>")
        lines.append("  </skill>")
    lines.append("</available_skills>")
    return "\n".join(lines)
