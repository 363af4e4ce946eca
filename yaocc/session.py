"""Per-session transcript store: append-only markdown log, summary cache, lock.

Each session id owns three files in the sessions directory:

    <id>.md          append-only log of "### <Role> (<timestamp>)" blocks
    <id>-summary.md  latest summary text
    <id>.lock        lock marker (existence-based, self-expiring)

The lock only serializes summarization passes against each other; appends
never take it.
"""

import os
import time
from datetime import datetime
from pathlib import Path

from .errors import LockTimeoutError, SessionLockedError
from .llm import Message

DEFAULT_SESSION = "general"
LOCK_POLL_INTERVAL = 0.1
# A marker older than this is considered abandoned (crashed holder).
LOCK_STALE_AFTER = 10 * 60

_ROLE_HEADERS = (
    ("### User", "user"),
    ("### Assistant", "assistant"),
    ("### Model", "assistant"),
    ("### System", "system"),
)


def sanitize_session_id(session_id: str) -> str:
    """Reduce a session id to a single safe path component."""
    safe = os.path.basename(os.path.normpath(session_id or "."))
    if safe in ("", ".", "..", "/"):
        return DEFAULT_SESSION
    return safe


def format_entry(role: str, content: str, timestamp: datetime | None = None) -> str:
    ts = (timestamp or datetime.now().astimezone()).isoformat(timespec="seconds")
    return f"\n### {role.title()} ({ts})\n\n{content}\n"


def parse_history(text: str) -> list[Message]:
    """Split a transcript into messages on role-header lines.

    Lines before the first header are ignored; every other line belongs
    to the block opened by the most recent header.
    """
    messages: list[Message] = []
    role: str | None = None
    lines: list[str] = []

    for line in text.split("\n"):
        new_role = None
        for prefix, r in _ROLE_HEADERS:
            if line.startswith(prefix):
                new_role = r
                break
        if new_role is None:
            lines.append(line)
            continue
        if role is not None:
            messages.append(Message(role=role, content="\n".join(lines).strip()))
        role = new_role
        lines = []

    if role is not None:
        messages.append(Message(role=role, content="\n".join(lines).strip()))
    return messages


class SessionLock:
    """Handle for a held lock marker. Release is idempotent."""

    def __init__(self, path: Path):
        self.path = path
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()
        return False


class SessionStore:
    def __init__(self, base_dir: str | Path, stale_after: float = LOCK_STALE_AFTER):
        self.base_dir = Path(base_dir)
        self.stale_after = stale_after

    # --- Paths ---

    def history_path(self, session_id: str) -> Path:
        return self.base_dir / f"{sanitize_session_id(session_id)}.md"

    def summary_path(self, session_id: str) -> Path:
        return self.base_dir / f"{sanitize_session_id(session_id)}-summary.md"

    def lock_path(self, session_id: str) -> Path:
        return self.base_dir / f"{sanitize_session_id(session_id)}.lock"

    # --- History ---

    def load_history(self, session_id: str) -> list[Message]:
        """Parse the session log. A missing log is an empty history."""
        path = self.history_path(session_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return parse_history(text)

    def append(self, session_id: str, role: str, content: str) -> None:
        """Append one entry with a single write. Raises OSError on failure."""
        path = self.history_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = format_entry(role, content)
        with path.open("a", encoding="utf-8") as f:
            f.write(entry)
            f.flush()

    # --- Summary ---

    def load_summary(self, session_id: str) -> str:
        try:
            return self.summary_path(session_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def save_summary(self, session_id: str, content: str) -> None:
        path = self.summary_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    # --- Lock ---

    def _is_stale(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age >= self.stale_after

    def is_locked(self, session_id: str) -> bool:
        path = self.lock_path(session_id)
        return path.exists() and not self._is_stale(path)

    def acquire_lock(self, session_id: str) -> SessionLock:
        """Create the lock marker without waiting.

        Raises SessionLockedError if a live marker exists. An expired
        marker is removed and replaced.
        """
        path = self.lock_path(session_id)
        if path.exists():
            if not self._is_stale(path):
                raise SessionLockedError(f"session {session_id!r} is locked")
            try:
                path.unlink()
            except FileNotFoundError:
                pass

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise SessionLockedError(f"session {session_id!r} is locked")
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")
        return SessionLock(path)

    def wait_for_lock(
        self,
        session_id: str,
        timeout: float,
        interval: float = LOCK_POLL_INTERVAL,
    ) -> None:
        """Poll until the marker is gone or expired.

        The caller must still acquire_lock() afterwards. Raises
        LockTimeoutError once timeout seconds have elapsed.
        """
        deadline = time.monotonic() + timeout
        while self.is_locked(session_id):
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"timeout waiting for lock on session {session_id!r}"
                )
            time.sleep(interval)
