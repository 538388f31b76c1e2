"""Shell command execution, rewrite backends and failure heuristics."""

import logging
import os
import re
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from .compact import clip_text

logger = logging.getLogger(__name__)

MAX_CAPTURE_BYTES = 1 * 1024 * 1024  # 1MB
DEFAULT_TIMEOUT = 120
MAX_TIMEOUT = 3600
NO_OUTPUT = "(no output)"

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals

POWERSHELL_PREAMBLE = (
    "$OutputEncoding = [Console]::OutputEncoding = "
    "[System.Text.UTF8Encoding]::new($false); "
)


def clip_output(text: str, max_len: int) -> str:
    return clip_text(text, max_len, "...\n[truncated]")


# ---------------------------------------------------------------------------
# Failure heuristics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FailureRule:
    """Flags output containing *needle* (case-insensitive) as a failure."""

    label: str
    needle: str

    def matches(self, lowered_output: str) -> bool:
        return self.needle in lowered_output


DEFAULT_FAILURE_RULES = (
    FailureRule("command not recognized", "commandnotfoundexception"),
    FailureRule("command not recognized", "is not recognized"),
    FailureRule("command not found", "command not found"),
    FailureRule("missing file", "can't open file"),
    FailureRule("missing file", "no such file"),
    FailureRule("missing module", "module not found"),
    FailureRule("missing module", "modulenotfounderror"),
    FailureRule("traceback", "traceback"),
    FailureRule("timeout", "timed out"),
    FailureRule("spawn failure", "error: failed to start command"),
)


class FailureClassifier:
    """Ordered substring rules over command output. First match wins."""

    def __init__(self, rules=DEFAULT_FAILURE_RULES):
        self.rules: list[FailureRule] = list(rules)

    def add_rule(self, label: str, needle: str) -> None:
        self.rules.append(FailureRule(label, needle.lower()))

    def classify(self, output: str) -> str | None:
        lowered = output.lower()
        for rule in self.rules:
            if rule.matches(lowered):
                logger.debug("failure rule %r matched", rule.needle)
                return rule.label
        return None

    def looks_like_failure(self, output: str) -> bool:
        return self.classify(output) is not None


# ---------------------------------------------------------------------------
# Shell backends (pre-execution rewrite stage)
# ---------------------------------------------------------------------------


def _extract_quoted(cmd: str) -> str | None:
    m = re.search(r"\"([^\"]*)\"|'([^']*)'", cmd)
    if not m:
        return None
    return m.group(1) if m.group(1) is not None else m.group(2)


def _flag_value(cmd: str, prefix: str) -> str | None:
    for token in cmd.split():
        if token.startswith(prefix):
            return token[len(prefix) :].strip("\"'")
    return None


def _name_glob(cmd: str) -> str | None:
    idx = cmd.find("-name")
    if idx < 0:
        return None
    rest = cmd[idx + len("-name") :].split()
    return rest[0].strip("\"'") if rest else None


def _head_limit(cmd: str) -> int | None:
    m = re.search(r"head -(?:n\s*)?(\d+)", cmd)
    return int(m.group(1)) if m else None


def normalize_powershell_command(cmd: str) -> str:
    """Replace unquoted ``&&`` with ``; `` (Windows PowerShell 5.1 lacks ``&&``)."""
    out = []
    in_single = in_double = False
    i = 0
    while i < len(cmd):
        ch = cmd[i]
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif (
            ch == "&"
            and not in_single
            and not in_double
            and cmd[i + 1 : i + 2] == "&"
        ):
            out.append("; ")
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


class ShellBackend:
    """How a command string becomes a process on this platform."""

    name = "posix"

    def rewrite(self, cmd: str) -> str:
        return cmd

    def translate(self, cmd: str) -> tuple[list[str], int] | None:
        """Return (argv, max_lines) for a direct replacement, or None."""
        return None

    def argv(self, cmd: str) -> list[str]:
        return ["/bin/sh", "-lc", cmd]


class PosixShellBackend(ShellBackend):
    pass


class PowerShellBackend(ShellBackend):
    """PowerShell with ripgrep stand-ins for POSIX grep/find when ``rg`` exists."""

    name = "powershell"

    def __init__(self, which=shutil.which):
        self._which = which

    def has_ripgrep(self) -> bool:
        return self._which("rg") is not None

    def rewrite(self, cmd: str) -> str:
        return normalize_powershell_command(cmd)

    def translate(self, cmd: str) -> tuple[list[str], int] | None:
        trimmed = cmd.strip()
        if not self.has_ripgrep():
            return None
        if trimmed.startswith("grep "):
            pattern = _extract_quoted(trimmed)
            if pattern is None:
                return None
            argv = ["rg", "-n"]
            glob = _flag_value(trimmed, "--include=")
            if glob:
                argv += ["-g", glob]
            argv += [pattern.replace("\\|", "|"), "."]
            return argv, _head_limit(trimmed) or 30
        if trimmed.startswith("find "):
            tokens = trimmed.split()
            path = tokens[1] if len(tokens) > 1 and not tokens[1].startswith("-") else "."
            glob = _name_glob(trimmed) or "*"
            return ["rg", "--files", "-g", glob, path], _head_limit(trimmed) or 20
        return None

    def argv(self, cmd: str) -> list[str]:
        return ["powershell", "-NoProfile", "-Command", POWERSHELL_PREAMBLE + cmd]


def select_backend(platform: str | None = None) -> ShellBackend:
    platform = platform or sys.platform
    backend = PowerShellBackend() if platform == "win32" else PosixShellBackend()
    logger.debug("shell backend: %s", backend.name)
    return backend


# ---------------------------------------------------------------------------
# Process execution
# ---------------------------------------------------------------------------


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
    """Capture merged output from a running subprocess with timeout enforcement."""
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
                remaining = MAX_CAPTURE_BYTES - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_CAPTURE_BYTES:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

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
    if raw_output.strip():
        parts.append(raw_output.rstrip("\n"))
    if output_truncated:
        parts.append("[output truncated at 1MB]")
    if timed_out:
        parts.append(f"error: command timed out after {timeout}s")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    return "\n".join(parts) if parts else NO_OUTPUT


def _spawn(argv: list[str], base_dir: str) -> subprocess.Popen:
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    return subprocess.Popen(argv, **popen_kwargs)


def run_shell_command(
    cmd: str,
    base_dir: str = ".",
    timeout: int = DEFAULT_TIMEOUT,
    backend: ShellBackend | None = None,
) -> str:
    """Run *cmd* in *base_dir* and return stdout+stderr as text.

    Never raises for a failing command: nonzero exits, spawn errors and
    timeouts are all reported in the returned text.
    """
    base_path = Path(base_dir)
    if not base_path.is_dir():
        return f"error: failed to start command: base directory not found: {base_dir}"

    backend = backend or select_backend()
    timeout = max(1, min(timeout, MAX_TIMEOUT))

    translated = backend.translate(cmd)
    if translated is not None:
        argv, max_lines = translated
        logger.debug("translated %r -> %r", cmd, argv)
    else:
        argv, max_lines = backend.argv(backend.rewrite(cmd)), None

    try:
        proc = _spawn(argv, base_dir)
    except OSError as e:
        return f"error: failed to start command: {e}"

    output = _capture_process(proc, timeout)
    if max_lines is not None and output != NO_OUTPUT:
        output = "\n".join(output.splitlines()[:max_lines])
    return output
