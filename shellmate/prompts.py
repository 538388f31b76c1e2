"""Named system prompts stored as JSON files, with {{var}} template variables."""

import json
import logging
import re
from pathlib import Path

from .report import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_NAME = "default"
DEFAULT_PROMPTS = {
    "default": (
        "You are a pragmatic senior software engineer. "
        "Keep responses concise and actionable."
    ),
    "review": (
        "Focus on correctness, regressions, security risks, and missing tests. "
        "Prioritize high-severity findings."
    ),
    "edit": (
        "Keep changes minimal, preserve behavior unless asked, "
        "and do not introduce unrelated refactors."
    ),
}
STATE_FILE = "_state.json"
PREVIEW_CHARS = 90

_NAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]")


def safe_filename(name: str) -> str:
    return _NAME_UNSAFE_RE.sub("_", name) or "prompt"


def render_prompt_vars(text: str, variables: dict[str, str]) -> str:
    """Replace each ``{{key}}`` with its value; unknown placeholders stay."""
    for key, value in variables.items():
        text = text.replace("{{" + key + "}}", value)
    return text


def truncate_preview(text: str, max_len: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= max_len else text[:max_len] + "..."


class PromptStore:
    """Prompts under ``<config_dir>/prompts``: one ``<name>.json`` per prompt.

    Each file holds ``{"name": ..., "content": ...}``. The active prompt
    name and the template variables live in ``_state.json`` next to them.
    The built-in prompts are written on first use.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        return self.root / f"{safe_filename(name)}.json"

    def _ensure_defaults(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        for name, content in DEFAULT_PROMPTS.items():
            if not self._path(name).exists():
                self.save(name, content)

    def _read_doc(self, path: Path) -> dict:
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"invalid prompt file {path}: {e}") from e
        if (
            not isinstance(doc, dict)
            or not isinstance(doc.get("name"), str)
            or not isinstance(doc.get("content"), str)
        ):
            raise ConfigError(f"invalid prompt file {path}: expected name and content")
        return doc

    def _docs(self) -> list[dict]:
        self._ensure_defaults()
        docs = [
            self._read_doc(p)
            for p in self.root.glob("*.json")
            if p.name != STATE_FILE
        ]
        return sorted(docs, key=lambda d: d["name"])

    def names(self) -> list[str]:
        return [d["name"] for d in self._docs()]

    def get(self, name: str) -> str | None:
        target = name.strip()
        for doc in self._docs():
            if doc["name"] == target:
                return doc["content"]
        return None

    def save(self, name: str, content: str) -> None:
        name = name.strip()
        if not name:
            raise ConfigError("prompt name cannot be empty")
        self.root.mkdir(parents=True, exist_ok=True)
        doc = {"name": name, "content": content}
        self._path(name).write_text(json.dumps(doc, indent=2) + "\n", encoding="utf-8")
        logger.debug("saved prompt %s", name)

    def remove(self, name: str) -> None:
        target = name.strip()
        if target == DEFAULT_PROMPT_NAME:
            raise ConfigError("cannot remove the default prompt")
        for path in self.root.glob("*.json"):
            if path.name == STATE_FILE:
                continue
            if self._read_doc(path)["name"] == target:
                path.unlink()
                state = self._state()
                if state["active"] == target:
                    state["active"] = DEFAULT_PROMPT_NAME
                    self._write_state(state)
                return
        raise ConfigError(f"prompt not found: {target}")

    # -- Active prompt and variables ----------------------------------------

    def _state(self) -> dict:
        path = self.root / STATE_FILE
        state = {"active": DEFAULT_PROMPT_NAME, "vars": {}}
        if not path.is_file():
            return state
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"invalid prompt state {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"invalid prompt state {path}: expected a JSON object")
        if isinstance(data.get("active"), str):
            state["active"] = data["active"]
        if isinstance(data.get("vars"), dict):
            state["vars"] = {
                k: v for k, v in data["vars"].items() if isinstance(v, str)
            }
        return state

    def _write_state(self, state: dict) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / STATE_FILE).write_text(
            json.dumps(state, indent=2, sort_keys=True) + "\n", encoding="utf-8"
        )

    @property
    def active(self) -> str:
        name = self._state()["active"]
        return name if self.get(name) is not None else DEFAULT_PROMPT_NAME

    def use(self, name: str) -> None:
        if self.get(name) is None:
            raise ConfigError(f"prompt not found: {name}")
        state = self._state()
        state["active"] = name.strip()
        self._write_state(state)

    @property
    def variables(self) -> dict[str, str]:
        return dict(sorted(self._state()["vars"].items()))

    def set_var(self, key: str, value: str) -> None:
        state = self._state()
        state["vars"][key] = value
        self._write_state(state)

    def remove_var(self, key: str) -> bool:
        state = self._state()
        if key not in state["vars"]:
            return False
        del state["vars"][key]
        self._write_state(state)
        return True

    def render(self, name: str | None = None) -> str:
        """Text of prompt *name* (default: the active one) with variables applied."""
        raw = self.get(name or self.active)
        if raw is None:
            raw = DEFAULT_PROMPTS[DEFAULT_PROMPT_NAME]
        return render_prompt_vars(raw, self.variables)
