"""Read-only workspace file tools behind /read, /list and /grep, plus the single-file review and edit tasks."""

import logging
import os
import shutil
import subprocess
from pathlib import Path

from .report import AgentError

logger = logging.getLogger(__name__)

MAX_GREP_MATCHES = 200
MAX_LINE_LENGTH = 400
BINARY_CHECK_BYTES = 8192
RG_TIMEOUT = 60
IGNORED_DIRS = {".git", "node_modules", "target", ".idea", ".vscode"}

FILE_QUESTION_TEMPLATE = """\
User asked to analyze this file and answer a concrete request.
Provide direct answer to user request first, then list supporting evidence from file.
Do not output shell commands unless user explicitly asks.

Original user request:
{request}

File: {path}
```{ext}
{content}
```"""

REVIEW_TEMPLATE = """\
Please review this code. Focus on correctness, bugs, risks, and missing tests.
Provide concise findings with severity and actionable suggestions.

File: {path}
```{ext}
{content}
```"""

EDIT_TEMPLATE = """\
Edit this file according to the instruction.
Return ONLY the full updated file content with no markdown and no explanation.

Instruction:
{instruction}

File: {path}
```{ext}
{content}
```"""


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve *file_path* against *base_dir*, refusing paths that escape it.

    Raises:
        AgentError: If the resolved path is outside the base directory.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise AgentError(
            f"path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _is_binary(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(BINARY_CHECK_BYTES)
    except OSError:
        return True


def read_text_file(file_path: str, base_dir: str = ".") -> str:
    path = safe_resolve(file_path, base_dir)
    if not path.exists():
        raise AgentError(f"file does not exist: {file_path}")
    if path.is_dir():
        raise AgentError(f"path is a directory: {file_path}")
    if _is_binary(path):
        raise AgentError(f"binary file detected: {file_path}")
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise AgentError(f"failed to read {file_path}: {e}") from e


def file_extension(file_path: str) -> str:
    return Path(file_path).suffix.lstrip(".") or "txt"


def backup_path(path: Path) -> Path:
    """``main.py`` -> ``main.bak.py``; ``Makefile`` -> ``Makefile.bak``."""
    if path.suffix:
        return path.with_name(f"{path.stem}.bak{path.suffix}")
    return path.with_name(f"{path.name}.bak")


# ---------------------------------------------------------------------------
# Listing and search
# ---------------------------------------------------------------------------


def _walk_files(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        for name in sorted(filenames):
            yield Path(dirpath) / name


def _rel(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def _run_rg(argv: list[str], cwd: str) -> str | None:
    """Run ripgrep; None when it is unavailable or fails, so callers fall back."""
    try:
        proc = subprocess.run(
            argv, cwd=cwd, capture_output=True, text=True, timeout=RG_TIMEOUT
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("rg unavailable: %s", e)
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout


def _resolve_dir(path: str, base_dir: str) -> Path:
    root = safe_resolve(path, base_dir)
    if not root.exists():
        raise AgentError(f"path does not exist: {path}")
    return root


def list_files(path: str = ".", base_dir: str = ".", *, use_rg: bool | None = None) -> str:
    """Files under *path*, one per line, relative to *base_dir*."""
    root = _resolve_dir(path, base_dir)
    if use_rg is None:
        use_rg = shutil.which("rg") is not None
    if use_rg:
        out = _run_rg(["rg", "--files", path], base_dir)
        if out is not None:
            return out.rstrip("\n")
    if root.is_file():
        return path
    base = Path(base_dir).resolve()
    return "\n".join(_rel(p, base) for p in _walk_files(root))


def grep_files(
    pattern: str, path: str = ".", base_dir: str = ".", *, use_rg: bool | None = None
) -> str:
    """``file:line:text`` for every line containing *pattern*.

    ripgrep treats *pattern* as a regex; the built-in fallback matches it
    as a case-insensitive substring.
    """
    root = _resolve_dir(path, base_dir)
    if use_rg is None:
        use_rg = shutil.which("rg") is not None
    if use_rg:
        out = _run_rg(["rg", "-n", "--", pattern, path], base_dir)
        if out is not None:
            return out.rstrip("\n")

    base = Path(base_dir).resolve()
    needle = pattern.lower()
    files = [root] if root.is_file() else _walk_files(root)
    matches: list[str] = []
    truncated = False
    for filepath in files:
        if _is_binary(filepath):
            continue
        try:
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if needle in line.lower():
                if len(matches) >= MAX_GREP_MATCHES:
                    truncated = True
                    break
                matches.append(
                    f"{_rel(filepath, base)}:{line_no}:{line.strip()[:MAX_LINE_LENGTH]}"
                )
        if truncated:
            break

    if not matches:
        return "No matches found."
    result = "\n".join(matches)
    if truncated:
        result += f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches.)"
    return result


# ---------------------------------------------------------------------------
# Prompts for file tasks
# ---------------------------------------------------------------------------


def file_question_prompt(request: str, file_path: str, content: str) -> str:
    return FILE_QUESTION_TEMPLATE.format(
        request=request, path=file_path, ext=file_extension(file_path), content=content
    )


def review_prompt(file_path: str, content: str, extra: str | None = None) -> str:
    prompt = REVIEW_TEMPLATE.format(
        path=file_path, ext=file_extension(file_path), content=content
    )
    if extra:
        prompt += f"\n\nExtra requirement:\n{extra}"
    return prompt


def edit_prompt(file_path: str, instruction: str, content: str) -> str:
    return EDIT_TEMPLATE.format(
        instruction=instruction,
        path=file_path,
        ext=file_extension(file_path),
        content=content,
    )


def strip_code_fence(text: str) -> str:
    """Drop one wrapping ``` fence if the model added it anyway."""
    lines = text.strip("\n").splitlines()
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].strip() == "```":
        return "\n".join(lines[1:-1])
    return text


def apply_edit(file_path: str, base_dir: str, original: str, edited: str) -> Path:
    """Write *edited* to the file after saving *original* beside it. Returns the backup path."""
    path = safe_resolve(file_path, base_dir)
    backup = backup_path(path)
    try:
        backup.write_text(original, encoding="utf-8")
        content = edited if edited.endswith("\n") or not original.endswith("\n") else edited + "\n"
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise AgentError(f"failed to write {file_path}: {e}") from e
    return backup
