"""Workspace helpers: project verification, request context and git change tracking."""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .tools import DEFAULT_TIMEOUT, FailureClassifier, clip_output, run_shell_command

logger = logging.getLogger(__name__)

VERIFICATION_OUTPUT_CHARS = 5000
VERIFICATION_SKIPPED = "verification: skipped (no supported project checker detected)"

SNAPSHOT_ROOT_ENTRIES = 80
SNAPSHOT_FILES = 120
SNAPSHOT_MANIFEST_LINES = 80
SNAPSHOT_IGNORED = {
    ".git",
    "node_modules",
    "target",
    ".idea",
    ".vscode",
    "__pycache__",
    ".shellmate",
}
SNAPSHOT_MANIFESTS = (
    "Cargo.toml",
    "package.json",
    "pyproject.toml",
    "requirements.txt",
    "go.mod",
    "pom.xml",
)

PROJECT_ANALYSIS_PHRASES = (
    "分析这个项目",
    "分析项目",
    "审查这个项目",
    "看看这个项目",
    "analyze this project",
    "analyze the project",
    "review this project",
    "review the project",
    "look at this project",
)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@dataclass
class Verification:
    label: str | None
    command: str | None
    ok: bool
    text: str

    @property
    def status(self) -> str:
        if self.command is None:
            return "skipped"
        return "ok" if self.ok else "failed"


def pick_verification_command(base_dir: str = ".") -> tuple[str, str] | None:
    """Return ``(label, command)`` for the first manifest found in *base_dir*."""
    root = Path(base_dir)

    def has(name: str) -> bool:
        return (root / name).exists()

    if has("Cargo.toml"):
        return "rust", "cargo check"
    if has("pnpm-lock.yaml") and has("tsconfig.json"):
        return "typescript", "pnpm -s tsc --noEmit"
    if has("package.json") and has("tsconfig.json"):
        return "typescript", "npm exec -y tsc --noEmit"
    if has("pyproject.toml") or has("pytest.ini"):
        return "python", "pytest -q"
    if has("go.mod"):
        return "go", "go build ./..."
    return None


def run_auto_verification(
    base_dir: str = ".",
    timeout: int = DEFAULT_TIMEOUT,
    classifier: FailureClassifier | None = None,
    runner=run_shell_command,
) -> Verification:
    picked = pick_verification_command(base_dir)
    if picked is None:
        return Verification(None, None, True, VERIFICATION_SKIPPED)
    label, cmd = picked
    classifier = classifier or FailureClassifier()
    out = runner(cmd, base_dir, timeout)
    ok = not classifier.looks_like_failure(out)
    status = "ok" if ok else "failed"
    clipped = clip_output(out, VERIFICATION_OUTPUT_CHARS)
    logger.debug("verification %s: %s", label, status)
    return Verification(label, cmd, ok, f"verification[{label}] {status}\n$ {cmd}\n{clipped}")


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


def is_project_analysis_request(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in PROJECT_ANALYSIS_PHRASES)


def _root_entries(root: Path) -> list[str]:
    entries = []
    for p in root.iterdir():
        if p.name in SNAPSHOT_IGNORED:
            continue
        entries.append(f"{p.name}/" if p.is_dir() else p.name)
    return sorted(entries)


def _indexed_files(root: Path, limit: int = SNAPSHOT_FILES) -> tuple[list[str], int]:
    """Return the first *limit* files in walk order and the total file count."""
    sample: list[str] = []
    total = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SNAPSHOT_IGNORED)
        for name in sorted(filenames):
            total += 1
            if len(sample) < limit:
                sample.append(str((Path(dirpath) / name).relative_to(root)))
    return sample, total


def build_project_snapshot(base_dir: str = ".") -> str:
    root = Path(base_dir)
    lines = ["Root entries:"]

    entries = _root_entries(root)
    if not entries:
        lines.append("- (empty)")
    for entry in entries[:SNAPSHOT_ROOT_ENTRIES]:
        lines.append(f"- {entry}")
    if len(entries) > SNAPSHOT_ROOT_ENTRIES:
        lines.append(f"- ... ({len(entries) - SNAPSHOT_ROOT_ENTRIES} more)")

    files, total = _indexed_files(root)
    lines.append(f"Total indexed files: {total}")
    lines.append("Sample files:")
    for path in files:
        lines.append(f"- {path}")
    if total > len(files):
        lines.append(f"- ... ({total - len(files)} more)")

    lines.append("Manifest previews:")
    found = False
    for name in SNAPSHOT_MANIFESTS:
        path = root / name
        if not path.is_file():
            continue
        found = True
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            text = "<unreadable>"
        preview = "\n".join(text.splitlines()[:SNAPSHOT_MANIFEST_LINES])
        lines.append(f"--- {name} ---\n{preview}")
    if not found:
        lines.append("- none found in workspace root")

    return "\n".join(lines)


def augment_user_input(text: str, base_dir: str = ".") -> str:
    """Prefix a user request with the workspace path, plus a snapshot when asked to analyze it."""
    cwd = Path(base_dir).resolve()
    if is_project_analysis_request(text):
        snapshot = build_project_snapshot(base_dir)
        return (
            f"Workspace CWD: {cwd}\nAuto project snapshot:\n{snapshot}\n\n"
            f"User request: {text}"
        )
    return f"Workspace CWD: {cwd}\nUser request: {text}"


# ---------------------------------------------------------------------------
# Changed files
# ---------------------------------------------------------------------------


def changed_files(base_dir: str = ".") -> set[str]:
    """Paths reported by ``git status --porcelain``; empty outside a git repo."""
    try:
        proc = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=base_dir,
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired):
        return set()
    if proc.returncode != 0:
        return set()
    files = set()
    for line in proc.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if path:
            files.add(path)
    return files


def print_changed_files_delta(before: set[str], base_dir: str = ".") -> set[str]:
    after = changed_files(base_dir)
    if after != before:
        fmt.changed_files(
            added=sorted(after - before),
            kept=sorted(after & before),
            removed=sorted(before - after),
        )
    return after
