"""Subprocess execution for tool calls: shell policy, capture, timeouts."""

import os
import subprocess
import sys
import threading
from pathlib import Path

from .config import CmdConfig

DEFAULT_TIMEOUT = 30
MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB returned to the model
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals

# Substring patterns refused by the shell tool unless a whitelist is set.
DEFAULT_BLACKLIST = [
    # File system destruction
    "rm -rf",
    "rm -r -f",
    "rm -f -r",
    "del /f /s /q",
    "rd /s /q",
    "mkfs",
    "fdisk",
    "dd if=",
    "Format-Volume",
    ":(){:|:&};:",
    # Privilege escalation
    "sudo",
    "su -",
    "runas",
    "doas",
    # Shell spawning
    "bash -i",
    "/bin/sh -i",
    "Invoke-Expression",
    "IEX ",
    "eval ",
    "exec(",
    "cmd.exe",
    "powershell.exe",
    # Listening sockets
    "nc -l",
    "ncat -l",
    # Sensitive files
    ".env",
    "config.json",
    "/etc/passwd",
    "/etc/shadow",
    "C:\\Windows\\System32\\config\\SAM",
]


class CommandDenied(Exception):
    """Raised by validate_command() when the policy refuses a command."""


def validate_command(command: str, cmd_config: CmdConfig | None = None) -> None:
    """Check a shell string against the exec policy.

    A non-empty whitelist wins outright: the command must contain one of
    its patterns. Otherwise the configured blacklist (or DEFAULT_BLACKLIST
    when none is configured) must not match.
    """
    whitelist = cmd_config.whitelist if cmd_config else []
    if whitelist:
        if not any(pattern in command for pattern in whitelist):
            raise CommandDenied("command denied: not in whitelist")
        return

    blacklist = (cmd_config.blacklist if cmd_config else []) or DEFAULT_BLACKLIST
    for pattern in blacklist:
        if pattern in command:
            raise CommandDenied(f"command denied: blocked by pattern {pattern!r}")


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Collect combined output from a running subprocess, enforcing timeout."""
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_OUTPUT_BYTES - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_OUTPUT_BYTES:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed/broken after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    raw_output = b"".join(output_chunks).decode("utf-8", errors="replace")
    parts: list[str] = []

    if timed_out:
        parts.append(f"error: command timed out after {timeout}s")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    if raw_output:
        parts.append(raw_output)

    if output_truncated:
        parts.append(f"[output truncated at {MAX_OUTPUT_BYTES // 1024}KB]")

    return "\n".join(parts) if parts else "(no output)"


def _spawn(argv: list[str], cwd: str | Path | None) -> subprocess.Popen:
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=str(cwd) if cwd is not None else None,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    return subprocess.Popen(argv, **popen_kwargs)


def run_argv(
    argv: list[str], cwd: str | Path | None = None, timeout: int = DEFAULT_TIMEOUT
) -> str:
    """Run an argument vector without a shell and return its output text."""
    try:
        proc = _spawn(argv, cwd)
    except OSError as e:
        return f"error: failed to start {argv[0]}: {e}"
    return _capture_process(proc, timeout)


def run_shell(
    command: str, cwd: str | Path | None = None, timeout: int = DEFAULT_TIMEOUT
) -> str:
    """Execute a shell string via sh -c (Unix) or powershell (Windows)."""
    if cwd is not None and not Path(cwd).is_dir():
        return f"error: working directory does not exist: {cwd}"

    if sys.platform == "win32":
        shell_cmd = ["powershell", "-Command", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    try:
        proc = _spawn(shell_cmd, cwd)
    except OSError as e:
        return f"error: failed to start shell command: {e}"
    return _capture_process(proc, timeout)
