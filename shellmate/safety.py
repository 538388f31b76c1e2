"""Command gating: static prechecks, execution policy and trusted prefixes."""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .report import ConfigError

logger = logging.getLogger(__name__)

EXEC_MODES = ("safe", "all", "custom")

# Verdict kinds
ALLOWED = "allowed"
DENIED_BY_POLICY = "denied_by_policy"
DENIED_BY_PRECHECK = "denied_by_precheck"
NEEDS_CONFIRMATION = "needs_confirmation"

MAX_BASE64_COMMAND_CHARS = 700
MAX_INLINE_SCRIPT_CHARS = 360

# Programs whose second token selects a distinct operation ("git push" vs
# "git status"), so trust and allow/deny entries are keyed on both.
DISPATCHER_PROGRAMS = {
    "git",
    "cargo",
    "npm",
    "pnpm",
    "yarn",
    "go",
    "docker",
    "kubectl",
    "pip",
    "pip3",
}

SAFE_PROGRAMS = {
    "ls",
    "dir",
    "pwd",
    "cat",
    "type",
    "head",
    "tail",
    "wc",
    "rg",
    "grep",
    "findstr",
    "tree",
    "find",
    "get-childitem",
    "get-content",
    "get-location",
}
SAFE_GIT_VERBS = {"status", "diff", "log", "show", "branch"}
UNSAFE_FIND_FLAGS = {
    "-delete",
    "-exec",
    "-execdir",
    "-ok",
    "-okdir",
    "-fprint",
    "-fprint0",
    "-fprintf",
    "-fls",
}
# rg --pre runs an arbitrary preprocessor on every file.
UNSAFE_RG_FLAG = "--pre"
_SHELL_CONTROL_RE = re.compile(r"[;&><`\n\r]|\|\||\$\(")

# Interpreter -> flag introducing an inline script.
INLINE_SCRIPT_FLAGS = {"python": "-c", "python3": "-c", "node": "-e"}
SCRIPT_RUNNERS = {"python": ".py", "python3": ".py", "node": ".js"}
PIP_PROGRAMS = {"pip", "pip3"}


@dataclass
class SafetyVerdict:
    kind: str
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.kind == ALLOWED


@dataclass
class ExecPolicy:
    """User-configured execution policy, read-only during a turn."""

    mode: str = "safe"
    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)
    confirm: bool = False

    def __post_init__(self):
        if self.mode not in EXEC_MODES:
            raise ConfigError(
                f"invalid exec mode {self.mode!r}, expected one of: {', '.join(EXEC_MODES)}"
            )


def normalize_command(cmd: str) -> str:
    """Lowercase and collapse whitespace for prefix comparisons."""
    return " ".join(cmd.split()).lower()


def matches_prefix_list(entries: list[str], cmd: str) -> bool:
    normalized = normalize_command(cmd)
    for entry in entries:
        prefix = normalize_command(entry)
        if prefix and normalized.startswith(prefix):
            return True
    return False


def command_prefix(cmd: str) -> str:
    """Return the trust key for *cmd*: the program, plus the sub-verb for dispatchers."""
    tokens = cmd.split()
    if not tokens:
        return ""
    first = tokens[0]
    if first.lower() in DISPATCHER_PROGRAMS and len(tokens) > 1:
        return f"{first} {tokens[1]}"
    return first


def _is_safe_segment(segment: str) -> bool:
    tokens = segment.split()
    if not tokens:
        return False
    first = tokens[0].lower()
    if first == "git":
        return len(tokens) > 1 and tokens[1].lower() in SAFE_GIT_VERBS
    if first == "find":
        return not any(t.lower() in UNSAFE_FIND_FLAGS for t in tokens[1:])
    if first == "rg":
        return not any(
            t == UNSAFE_RG_FLAG or t.startswith(UNSAFE_RG_FLAG + "=") for t in tokens[1:]
        )
    return first in SAFE_PROGRAMS


def is_safe_readonly(cmd: str) -> bool:
    """True when every pipeline segment is a whitelisted read-only invocation."""
    if _SHELL_CONTROL_RE.search(cmd):
        return False
    return all(_is_safe_segment(segment) for segment in cmd.split("|"))


def _strip_quotes(token: str) -> str:
    return token.strip("\"'")


def precheck_command(cmd: str, base_dir: str = ".") -> str | None:
    """Static, policy-independent rejection. Returns a reason, or None to proceed.

    File existence is checked against *base_dir* at call time, so a script
    written by an earlier command in the same reply passes.
    """
    tokens = cmd.split()
    if not tokens:
        return "empty command"
    first = tokens[0].lower()
    lower = cmd.lower()

    if ("base64" in lower or "frombase64string" in lower) and len(
        cmd
    ) > MAX_BASE64_COMMAND_CHARS:
        return "base64 payload too long; use small script file workflow instead"

    inline_flag = INLINE_SCRIPT_FLAGS.get(first)
    if inline_flag and f" {inline_flag} " in f"{lower} ":
        if "\n" in cmd or len(cmd) > MAX_INLINE_SCRIPT_CHARS:
            ext = SCRIPT_RUNNERS[first]
            return (
                f"{first} {inline_flag} is too long/multiline; "
                f"write a {ext} file then run it"
            )

    suffix = SCRIPT_RUNNERS.get(first)
    if suffix and len(tokens) >= 2:
        script = _strip_quotes(tokens[1])
        if script.endswith(suffix) and not (Path(base_dir) / script).exists():
            return f"script not found: {script}"

    if first in PIP_PROGRAMS:
        for idx, token in enumerate(tokens[:-1]):
            if token in ("-r", "--requirement"):
                req = _strip_quotes(tokens[idx + 1])
                if not (Path(base_dir) / req).exists():
                    return f"requirements file not found: {req}"

    return None


def is_command_allowed(policy: ExecPolicy, cmd: str) -> bool:
    if matches_prefix_list(policy.deny, cmd):
        return False
    if policy.mode == "all":
        return True
    if policy.mode == "custom":
        return matches_prefix_list(policy.allow, cmd)
    return is_safe_readonly(cmd)


def classify(
    policy: ExecPolicy,
    cmd: str,
    base_dir: str = ".",
    trusted: "TrustStore | None" = None,
) -> SafetyVerdict:
    """Classify *cmd*: precheck, then policy, then confirmation.

    The deny list wins over every mode and allow-list entry.
    """
    reason = precheck_command(cmd, base_dir)
    if reason is not None:
        logger.debug("precheck rejects %r: %s", cmd, reason)
        return SafetyVerdict(DENIED_BY_PRECHECK, reason)
    if not is_command_allowed(policy, cmd):
        logger.debug("policy %s denies %r", policy.mode, cmd)
        return SafetyVerdict(DENIED_BY_POLICY, "not permitted by exec policy")
    if policy.confirm and not (trusted is not None and trusted.is_trusted(cmd)):
        return SafetyVerdict(NEEDS_CONFIRMATION)
    return SafetyVerdict(ALLOWED)


class TrustStore:
    """Trusted command prefixes that skip interactive confirmation.

    Prefixes come from config (``exec_trusted``) and from a JSON file that
    the "always" confirmation answer appends to.
    """

    def __init__(self, path: Path | None = None, initial: list[str] | None = None):
        self.path = path
        self.prefixes: list[str] = []
        for prefix in initial or []:
            self._add_unique(prefix)
        if path is not None:
            for prefix in self._load(path):
                self._add_unique(prefix)

    @staticmethod
    def _load(path: Path) -> list[str]:
        if not path.is_file():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: invalid JSON: {e}") from e
        if not isinstance(data, list) or not all(isinstance(x, str) for x in data):
            raise ConfigError(f"{path}: expected a JSON array of strings")
        return data

    def _add_unique(self, prefix: str) -> bool:
        prefix = prefix.strip()
        if not prefix:
            return False
        if any(p.lower() == prefix.lower() for p in self.prefixes):
            return False
        self.prefixes.append(prefix)
        return True

    def is_trusted(self, cmd: str) -> bool:
        return matches_prefix_list(self.prefixes, cmd)

    def add(self, prefix: str) -> bool:
        """Trust *prefix* for future turns and persist it. Returns False if already trusted."""
        added = self._add_unique(prefix)
        if added:
            self.save()
        return added

    def remove(self, prefix: str) -> bool:
        before = len(self.prefixes)
        self.prefixes = [p for p in self.prefixes if p.lower() != prefix.strip().lower()]
        if len(self.prefixes) == before:
            return False
        self.save()
        return True

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.prefixes, indent=2) + "\n", encoding="utf-8")
